from __future__ import annotations

import pytest

from conftest import FakeGenerationClient
from webgen_factory.action_loop import ConversationalActionLoop
from webgen_factory.actions import apply_action, dedupe_actions, replace_region
from webgen_factory.errors import AbnormalStopError, GenerationTransportError
from webgen_factory.models import (
    ActionsResponse,
    ConversationState,
    DeleteAction,
    FilesResponse,
    GeneratedFile,
    RenameAction,
    ReplaceRegionAction,
    TextResponse,
    WriteAction,
)
from webgen_factory.retry import RetryPolicy

FILES = {
    "src/App.tsx": "import Hero from './components/Hero';\nexport default function App() {\n  return <Hero />;\n}\n",
    "src/components/Hero.tsx": "export default function Hero() {\n  return <h1>Welcome</h1>;\n}\n",
    "package.json": '{"name": "app"}',
}


def _loop(client: FakeGenerationClient, **kwargs: object) -> ConversationalActionLoop:
    kwargs.setdefault("policy", RetryPolicy(max_attempts=1))
    return ConversationalActionLoop(client, sleep=lambda _seconds: None, **kwargs)


def _state() -> ConversationState:
    return ConversationState(project_id="PROJECT-001")


def test_zero_action_first_call_is_done_without_mutation() -> None:
    client = FakeGenerationClient([ActionsResponse(actions=[], message="Nothing to change.")])

    result = _loop(client).step(_state(), FILES, "Is the hero centred?")

    assert result.done is True
    assert result.files == FILES
    assert result.applied == []
    assert result.response_text == "Nothing to change."
    assert client.call_count == 1
    assert [message.role for message in result.state.messages] == ["user", "assistant"]


def test_actions_are_applied_until_a_round_returns_none() -> None:
    replace = ReplaceRegionAction(
        path="src/components/Hero.tsx", search="Welcome", replace="Fresh bread daily", first_line=2, last_line=2
    )
    client = FakeGenerationClient(
        [
            ActionsResponse(actions=[replace, WriteAction(path="src/components/Footer.tsx", content="export {};")]),
            TextResponse(text="Updated the hero and added a footer."),
        ]
    )
    original = dict(FILES)

    result = _loop(client).step(_state(), FILES, "Change the headline and add a footer")

    assert result.done is True
    assert result.iterations == 1
    assert "Fresh bread daily" in result.files["src/components/Hero.tsx"]
    assert result.files["src/components/Footer.tsx"] == "export {};"
    assert result.changed_paths == ["src/components/Hero.tsx", "src/components/Footer.tsx"]
    assert result.response_text == "Updated the hero and added a footer."
    assert FILES == original
    tool_messages = [message for message in result.state.messages if message.role == "tool"]
    assert len(tool_messages) == 2
    assert "Replaced lines 2-2" in tool_messages[0].content


def test_duplicate_actions_in_one_round_are_applied_once() -> None:
    write = WriteAction(path="src/notes.md", content="hello")
    client = FakeGenerationClient([ActionsResponse(actions=[write, write]), ActionsResponse(actions=[])])

    result = _loop(client).step(_state(), FILES, "Add notes")

    assert len(result.applied) == 1
    assert result.files["src/notes.md"] == "hello"


def test_iteration_cap_returns_not_done() -> None:
    client = FakeGenerationClient(
        lambda prompt, context: ActionsResponse(actions=[WriteAction(path="src/x.ts", content=str(len(prompt)))])
    )

    result = _loop(client, max_iterations=3).step(_state(), FILES, "Keep going")

    assert result.done is False
    assert result.iterations == 3
    assert client.call_count == 3


def test_abnormal_stop_before_progress_retries_once_softened() -> None:
    client = FakeGenerationClient([AbnormalStopError("recitation"), ActionsResponse(actions=[])])

    result = _loop(client).step(_state(), FILES, "Copy the layout of a famous site " + "x" * 1000)

    assert result.done is True
    assert client.call_count == 2
    softened = client.calls[1]["prompt"]
    assert softened.startswith("Implement the following change in your own words")
    assert softened.endswith(" ...")


def test_abnormal_stop_twice_is_surfaced() -> None:
    client = FakeGenerationClient([AbnormalStopError("safety"), AbnormalStopError("safety")])

    with pytest.raises(AbnormalStopError):
        _loop(client).step(_state(), FILES, "Do it")

    assert client.call_count == 2


def test_abnormal_stop_after_progress_keeps_partial_changes() -> None:
    client = FakeGenerationClient(
        [ActionsResponse(actions=[WriteAction(path="src/a.ts", content="export {};")]), AbnormalStopError("length")]
    )

    result = _loop(client).step(_state(), FILES, "Add a module")

    assert result.done is False
    assert result.files["src/a.ts"] == "export {};"
    assert "length" in (result.error or "")
    assert client.call_count == 2


def test_transport_error_before_progress_propagates() -> None:
    client = FakeGenerationClient([GenerationTransportError("down")])
    with pytest.raises(GenerationTransportError):
        _loop(client).step(_state(), FILES, "Do it")


def test_files_response_is_treated_as_writes() -> None:
    client = FakeGenerationClient(
        [FilesResponse(files=[GeneratedFile(path="src/b.ts", content="export {};")], summary="Added b"), ActionsResponse()]
    )

    result = _loop(client).step(_state(), FILES, "Add b")

    assert result.files["src/b.ts"] == "export {};"
    assert result.response_text == "Added b"


def test_touched_files_stay_in_context() -> None:
    client = FakeGenerationClient(
        [ActionsResponse(actions=[WriteAction(path="src/new.ts", content="export const a = 1;")]), ActionsResponse()]
    )

    _loop(client).step(_state(), FILES, "Add a constant")

    assert client.calls[1]["context_files"]["src/new.ts"] == "export const a = 1;"


# ---------------------------------------------------------------------------
# Individual actions
# ---------------------------------------------------------------------------

def test_protected_files_are_not_modified() -> None:
    files = dict(FILES)
    result = apply_action(files, WriteAction(path="package.json", content="{}"))
    assert result.success is False
    assert files["package.json"] == '{"name": "app"}'


def test_rename_and_delete() -> None:
    files = dict(FILES)
    assert apply_action(files, RenameAction(path="src/components/Hero.tsx", new_path="src/components/Banner.tsx")).success
    assert "src/components/Hero.tsx" not in files
    assert apply_action(files, RenameAction(path="src/components/Banner.tsx", new_path="src/App.tsx")).success is False
    assert apply_action(files, DeleteAction(path="src/components/Banner.tsx")).success
    assert apply_action(files, DeleteAction(path="src/components/Banner.tsx")).success is False


def test_replace_region_is_limited_to_its_lines() -> None:
    content = "a = 1\nb = 1\nc = 1"
    assert replace_region(content, "= 1", "= 2", 2, 3) == "a = 1\nb = 2\nc = 1"
    with pytest.raises(ValueError):
        replace_region(content, "zzz", "y", 1, 3)
    with pytest.raises(ValueError):
        replace_region(content, "a", "y", 2, 9)


def test_dedupe_keeps_first_occurrence_order() -> None:
    first = WriteAction(path="a.ts", content="1")
    second = DeleteAction(path="b.ts")
    assert dedupe_actions([first, second, first]) == [first, second]
