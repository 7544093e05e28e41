"""Workflow definition validation, YAML loading and caching."""

import pytest

from quorum.errors import InvalidDefinition
from quorum.machine import DefinitionCache, load_definitions_from_path

FEATURE_YAML = """
type: cto_feature
agentType: cto
name: Feature delivery
initialState: analyze
triggerType: issue_assigned
triggerConfig:
  labels: [feature]
states:
  - name: analyze
    agentPrompt: "Analyze issue #{githubIssue}"
    requiredOutput: [needsSpec]
    onSuccess: spec
  - name: spec
    skipIf: "!context.needsSpec"
    onSuccess: implement
  - name: implement
    timeout: 1800000
    maxRetries: 2
    onFailure: implement
"""


def test_load_single_definition_file(tmp_path):
    path = tmp_path / "feature.yaml"
    path.write_text(FEATURE_YAML)

    (definition,) = load_definitions_from_path(path)

    assert definition.type == "cto_feature"
    assert definition.trigger_type == "issue_assigned"
    assert definition.trigger_config.labels == ["feature"]
    assert definition.state_names == ["analyze", "spec", "implement"]
    implement = definition.get_state("implement")
    assert implement.timeout == 1_800_000
    assert implement.max_retries == 2
    assert definition.get_state("spec").skip_if == "!context.needsSpec"


def test_load_directory_with_lists(tmp_path):
    (tmp_path / "a.yaml").write_text(FEATURE_YAML)
    (tmp_path / "b.yml").write_text(
        """
- type: one
  agentType: cmo
  initialState: s
  states: [{name: s}]
- type: two
  agentType: cfo
  initialState: s
  states: [{name: s}]
"""
    )
    types = [d.type for d in load_definitions_from_path(tmp_path)]
    assert types == ["cto_feature", "one", "two"]


def test_broken_graph_is_rejected(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(
        """
type: broken
agentType: cto
initialState: start
states:
  - name: begin
    onSuccess: finish
"""
    )
    with pytest.raises(InvalidDefinition) as exc:
        load_definitions_from_path(path)
    assert "initial state 'start'" in str(exc.value)
    assert "unknown state 'finish'" in str(exc.value)


def test_schema_errors_are_invalid_definitions(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("type: bad\nstates: []\n")
    with pytest.raises(InvalidDefinition):
        load_definitions_from_path(path)


@pytest.mark.asyncio
async def test_cache_round_trip(repository, linear_definition):
    cache = DefinitionCache(repository)
    await cache.save(linear_definition)
    assert cache.cached_types() == ["linear"]

    fresh = DefinitionCache(repository)
    assert await fresh.load() == 1
    assert (await fresh.get("linear")).initial_state == "plan"

    inactive = linear_definition.model_copy(update={"is_active": False, "version": 2})
    await fresh.save(inactive)
    assert fresh.cached_types() == []
    assert await fresh.get("linear") is None
    assert (await repository.get_definition("linear", active_only=False)).version == 2
