import json
from datetime import datetime, timezone

from agentfile.exporter import (
    DYNAMIC_INSTRUCTIONS_PLACEHOLDER,
    ExportOptions,
    export_host_agent,
    quick_export,
)
from agentfile.host import (
    Dynamic,
    ExternalToolBinding,
    HostAgentConfig,
    HostChatTurn,
    HostMemoryConfig,
    HostTool,
    ModelDescriptor,
    Static,
    build_input_model,
)
from agentfile.parser import is_valid_agent_file, parse_agent_file

NOW = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)
STAMP = "2024-06-01T08:30:00Z"

EMPTY_PARAMS = {"type": "object", "properties": {}}


def _agent(**overrides):
    fields = dict(
        name="Helper",
        instructions=Static("Answer briefly."),
        model=Static(ModelDescriptor("anthropic", "claude-3-haiku", {"temperature": 0.5, "context_window": 200000})),
        tools={},
    )
    fields.update(overrides)
    return HostAgentConfig(**fields)


def test_static_agent_exports_valid_document():
    result = export_host_agent(_agent(), now=NOW)
    doc = result.document
    assert doc.name == "Helper"
    assert doc.system == "Answer briefly."
    assert doc.agent_type == "letta"
    assert doc.version == "0.1.0"
    assert doc.created_at == STAMP and doc.updated_at == STAMP
    assert doc.llm_config.to_wire() == {
        "provider": "anthropic",
        "model": "claude-3-haiku",
        "temperature": 0.5,
        "context_window": 200000,
    }
    assert set(doc.core_memory) == {"persona", "human"}
    assert result.metadata.omitted_features == []
    assert is_valid_agent_file(result.content)


def test_dynamic_instructions_use_placeholder_and_flag():
    result = export_host_agent(_agent(instructions=Dynamic(lambda ctx: "x")), now=NOW)
    assert result.document.system == DYNAMIC_INSTRUCTIONS_PLACEHOLDER
    assert result.document.metadata_["host_dynamic_instructions"] is True
    assert result.metadata.omitted_features == ["dynamic_instructions"]
    assert result.document.metadata_["host_export"]["features"]["dynamic_instructions"] is True


def test_dynamic_model_uses_default_descriptor():
    result = export_host_agent(_agent(model=Dynamic()), now=NOW)
    assert result.document.llm_config.to_wire() == {"provider": "openai", "model": "gpt-4", "_dynamic": True}
    assert "dynamic_model" in result.metadata.omitted_features


def test_invalid_model_params_are_dropped_not_raised():
    result = export_host_agent(_agent(model=Static(ModelDescriptor("openai", "gpt-4", {"temperature": 9}))), now=NOW)
    assert result.document.llm_config.to_wire() == {"provider": "openai", "model": "gpt-4"}
    assert result.metadata.omitted_features == ["llm_config_params"]


def test_model_api_key_is_never_exported():
    result = export_host_agent(
        _agent(model=Static({"provider": "openai", "name": "gpt-4", "model_api_key": "sk-x"})), now=NOW
    )
    assert "sk-x" not in result.content


def test_non_json_metadata_is_omitted_not_raised():
    result = export_host_agent(_agent(metadata={"runtime": object(), "owner": "ops"}), now=NOW)
    assert result.document.metadata_["owner"] == "ops"
    assert "runtime" not in result.document.metadata_
    assert result.metadata.omitted_features == ["metadata.runtime"]
    assert is_valid_agent_file(result.content)


def test_non_json_memory_and_tool_metadata_are_omitted():
    tool = HostTool(
        id="calc",
        description="Calculate",
        input_model=build_input_model(EMPTY_PARAMS),
        metadata={"handle": object()},
    )
    memory = HostMemoryConfig(working_memory={"scratch": {"value": "x", "metadata": {"lock": object()}}})
    result = export_host_agent(_agent(tools={"calc": tool}), memory, now=NOW)
    assert result.document.tools == []
    assert "scratch" not in result.document.core_memory
    assert result.metadata.omitted_features == ["tools.calc", "core_memory.scratch"]


def test_invalid_version_falls_back_and_is_recorded():
    result = export_host_agent(_agent(), options=ExportOptions(version="one"), now=NOW)
    assert result.document.version == "0.1.0"
    assert result.metadata.omitted_features == ["version"]


def test_dynamic_tools_export_no_tools():
    result = export_host_agent(_agent(tools=Dynamic(lambda ctx: {})), now=NOW)
    assert result.document.tools == []
    assert result.metadata.tool_count == 0
    assert result.metadata.omitted_features == ["dynamic_tools"]
    assert result.document.metadata_["host_export"]["features"]["dynamic_tools"] is True


def test_tools_export_as_json_schema_with_extension():
    params = {
        "type": "object",
        "properties": {"q": {"type": "string"}, "n": {"type": "integer"}},
        "required": ["q"],
    }
    tools = {
        "search": HostTool(
            id="search",
            description="Search",
            input_model=build_input_model(params, "search"),
            extension=ExternalToolBinding(kind="mcp", server="https://x", tool_name="search"),
        ),
        "plain": HostTool(id="plain", description="", input_model=build_input_model(EMPTY_PARAMS)),
    }
    result = export_host_agent(_agent(tools=tools), now=NOW)
    search, plain = result.document.tools

    assert search.type == "json_schema"
    assert search.parameters.to_wire() == params
    assert search.source_code is None
    assert search.to_wire()["metadata"] == {"_mastra_tool": {"type": "mcp", "server": "https://x", "tool_name": "search"}}
    assert plain.description == "plain"
    assert plain.metadata is None
    assert result.metadata.tool_count == 2
    assert result.document.metadata_["host_export"]["features"]["external_tools"] is True


def test_stub_suffix_is_removed_on_export():
    tool = HostTool(
        id="calc",
        description="Calculate (stub - source code not imported)",
        input_model=build_input_model(EMPTY_PARAMS),
        handler=lambda args: None,
    )
    result = export_host_agent(_agent(tools={"calc": tool}), now=NOW)
    assert result.document.tools[0].description == "Calculate"


def test_working_memory_blocks():
    memory = HostMemoryConfig(
        working_memory={
            "persona": {"value": "I help.", "character_limit": 500, "metadata": {"v": 1}},
            "human": "Sam",
            "counter": 3,
            "prefs": {"theme": "dark"},
        }
    )
    blocks = export_host_agent(_agent(), memory, now=NOW).document.core_memory
    assert blocks["persona"].to_wire() == {
        "label": "persona",
        "value": "I help.",
        "character_limit": 500,
        "metadata": {"v": 1},
    }
    assert blocks["human"].to_wire() == {"label": "human", "value": "Sam"}
    assert blocks["counter"].value == "3"
    assert json.loads(blocks["prefs"].value) == {"theme": "dark"}


def test_messages_are_truncated_to_most_recent():
    turns = [HostChatTurn(role="user", content=f"turn {i}") for i in range(5)]
    result = export_host_agent(
        _agent(), HostMemoryConfig(messages=turns), ExportOptions(max_messages=2), now=NOW
    )
    messages = result.document.messages
    assert [m.text for m in messages] == ["turn 3", "turn 4"]
    assert [m.id for m in messages] == ["msg_0", "msg_1"]
    assert all(m.timestamp == STAMP for m in messages)
    assert result.metadata.message_count == 2


def test_message_ids_and_timestamps_come_from_turn_metadata():
    turn = HostChatTurn(
        role="assistant",
        content="done",
        metadata={
            "id": "m-9",
            "timestamp": "2024-01-02T03:04:05Z",
            "tool_calls": [{"id": "c1", "name": "search", "arguments": {}}],
            "trace": "abc",
        },
    )
    message = export_host_agent(_agent(), HostMemoryConfig(messages=[turn]), now=NOW).document.messages[0]
    assert message.id == "m-9"
    assert message.timestamp == "2024-01-02T03:04:05Z"
    assert message.tool_calls[0].name == "search"
    assert message.metadata == {"trace": "abc"}


def test_invalid_turn_is_omitted():
    turns = [HostChatTurn(role="narrator", content="x"), HostChatTurn(role="user", content="ok")]
    result = export_host_agent(_agent(), HostMemoryConfig(messages=turns), now=NOW)
    assert [m.text for m in result.document.messages] == ["ok"]
    assert result.metadata.omitted_features == ["messages.0"]


def test_options_control_output():
    memory = HostMemoryConfig(messages=[HostChatTurn(role="user", content="hi")])
    result = export_host_agent(
        _agent(metadata={"owner": "ops"}),
        memory,
        ExportOptions(pretty=False, include_host_metadata=False, version="2.1.0", include_messages=False, agent_type="memgpt"),
        now=NOW,
    )
    assert "\n" not in result.content
    assert result.document.version == "2.1.0"
    assert result.document.agent_type == "memgpt"
    assert result.document.messages == []
    assert result.document.metadata_ == {"owner": "ops"}


def test_af_metadata_takes_precedence():
    agent = _agent(
        metadata={
            "af_metadata": {
                "agent_type": "letta_v2",
                "version": "3.0.0",
                "created_at": "2023-05-05T00:00:00Z",
                "tags": ["x"],
                "description": "From file",
            }
        }
    )
    doc = export_host_agent(agent, options=ExportOptions(agent_type="other"), now=NOW).document
    assert doc.agent_type == "letta_v2"
    assert doc.version == "3.0.0"
    assert doc.created_at == "2023-05-05T00:00:00Z"
    assert doc.updated_at == STAMP
    assert doc.tags == ["x"]
    assert doc.description == "From file"
    assert "af_metadata" not in (doc.metadata_ or {})


def test_quick_export_is_pretty_and_parseable():
    text = quick_export(_agent())
    assert text.startswith("{\n  ")
    assert parse_agent_file(text).name == "Helper"
