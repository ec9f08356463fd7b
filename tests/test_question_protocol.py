import json

import pytest

from conftest import FakeChat, FakeRunnerFactory
from threadpilot.chat.ports import (
    MAX_CONTROL_VALUE_BYTES,
    ActionEvent,
    InboundMessage,
    ViewSubmission,
)
from threadpilot.errors import AlreadyAnswered, InvalidAnswer, QuestionExpired
from threadpilot.questions import QuestionProtocol, QuestionState
from threadpilot.questions.models import (
    ControlValue,
    ModalMetadata,
    Question,
    QuestionOption,
    pick_autopilot_answer,
)
from threadpilot.questions.protocol import TEXT_INPUT_CALLBACK, TEXT_INPUT_FIELD
from threadpilot.runners.events import ToolUseBlock
from threadpilot.sessions import SessionManager
from threadpilot.stores import PayloadStore, Workspace, WorkspaceStore
from threadpilot.stores.payloads import question_key


class Harness:
    def __init__(self, tmp_path, project_dir, *, autopilot=False):
        self.chat = FakeChat()
        self.factory = FakeRunnerFactory()
        self.payloads = PayloadStore(tmp_path / "payloads.json")
        workspaces = WorkspaceStore(tmp_path / "workspaces.json")
        workspaces.add(
            "t1",
            Workspace(
                directory=str(project_dir),
                project_name="proj",
                channel_id="chan",
                autopilot=autopilot,
            ),
        )
        self.sessions = SessionManager(workspaces=workspaces, runner_factory=self.factory)
        self.resumed = []

        async def resume(thread_id, text):
            self.resumed.append((thread_id, text))

        self.protocol = QuestionProtocol(
            chat=self.chat, payloads=self.payloads, sessions=self.sessions, resume=resume
        )

    async def start(self):
        self.session, self.runner = await self.sessions.start_run("t1", "go")
        return self.runner

    async def ask(self, *questions, tool_id="tu1"):
        tool = ToolUseBlock(
            id=tool_id, name="AskUserQuestion", input={"questions": list(questions)}
        )
        return await self.protocol.present(self.session, self.runner, tool)

    def press(self, post, button):
        return ActionEvent(
            action_id=button.action_id,
            value=button.value,
            user_id="alice",
            channel_id="chan",
            message_ts=post["ts"],
            thread_id="t1",
            trigger_id="alice",
        )


def _question(text, *labels, multi=False, header=None):
    q = {"question": text, "options": [{"label": label} for label in labels]}
    if multi:
        q["multiSelect"] = True
    if header:
        q["header"] = header
    return q


def _button(post, action_id):
    return next(b for b in post["buttons"] if b.action_id == action_id)


@pytest.mark.asyncio
async def test_single_select_delivers_option_label(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    qset = await h.ask(_question("Which database?", "sqlite", "postgres"))

    (post,) = h.chat.posts
    assert post["thread_id"] == "t1"
    assert [b.action_id for b in post["buttons"]] == [
        "select_option_0_0",
        "select_option_0_1",
        "text_input_0",
    ]

    await h.protocol.select_option(h.press(post, _button(post, "select_option_0_1")))

    assert h.runner.answers == [("tu1", "postgres")]
    assert qset.state == QuestionState.RESOLVED
    assert h.chat.updates[-1]["ts"] == post["ts"]
    assert "postgres" in h.chat.updates[-1]["text"]


@pytest.mark.asyncio
async def test_multi_select_submits_exactly_the_toggled_set(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(_question("Which features?", "A", "B", "C", multi=True))
    (post,) = h.chat.posts
    submit = _button(post, "submit_multi_select_0")

    with pytest.raises(InvalidAnswer):
        await h.protocol.submit_multi_select(h.press(post, submit))
    assert h.runner.answers == []

    await h.protocol.toggle_option(h.press(post, _button(post, "toggle_option_0_0")))
    await h.protocol.toggle_option(h.press(post, _button(post, "toggle_option_0_1")))
    assert h.protocol.state_of(json.loads(submit.value)["message_id"]) == (
        QuestionState.PARTIALLY_ANSWERED
    )
    # The toggles re-render the same message with the selection shown.
    assert h.chat.updates[-1]["ts"] == post["ts"]
    assert "Selected: A, B" in h.chat.updates[-1]["text"]

    await h.protocol.submit_multi_select(h.press(post, submit))
    assert h.runner.answers == [("tu1", "A, B")]


@pytest.mark.asyncio
async def test_toggle_twice_deselects(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(_question("Which?", "A", "B", multi=True))
    (post,) = h.chat.posts
    toggle_a = _button(post, "toggle_option_0_0")

    await h.protocol.toggle_option(h.press(post, toggle_a))
    await h.protocol.toggle_option(h.press(post, toggle_a))
    await h.protocol.toggle_option(h.press(post, _button(post, "toggle_option_0_1")))
    await h.protocol.submit_multi_select(h.press(post, _button(post, "submit_multi_select_0")))

    assert h.runner.answers == [("tu1", "B")]


@pytest.mark.asyncio
async def test_all_questions_answered_before_single_write(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(
        _question("Which database?", "sqlite", "postgres", header="Database"),
        _question("Add auth?", "yes", "no"),
    )
    first, second = h.chat.posts

    await h.protocol.select_option(h.press(first, _button(first, "select_option_0_0")))
    assert h.runner.answers == []

    await h.protocol.select_option(h.press(second, _button(second, "select_option_1_1")))
    assert h.runner.answers == [("tu1", "[Database]: sqlite\n[Add auth?]: no")]


@pytest.mark.asyncio
async def test_oversized_label_stays_out_of_button_values(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    huge = "x" * 5000
    await h.ask(_question("Pick", huge, "small"))
    (post,) = h.chat.posts

    for button in post["buttons"]:
        assert len(button.value.encode("utf-8")) <= MAX_CONTROL_VALUE_BYTES
        assert len(button.text) <= 75

    message_id = json.loads(post["buttons"][0].value)["message_id"]
    payload = h.payloads.get(question_key(message_id))
    assert payload["option_labels"][0] == huge

    await h.protocol.select_option(h.press(post, _button(post, "select_option_0_0")))
    assert h.runner.answers == [("tu1", huge)]


@pytest.mark.asyncio
async def test_double_submit_delivers_once(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(_question("Which?", "A", "B"))
    (post,) = h.chat.posts
    press = h.press(post, _button(post, "select_option_0_0"))

    await h.protocol.select_option(press)
    with pytest.raises(AlreadyAnswered):
        await h.protocol.select_option(press)

    assert h.runner.answers == [("tu1", "A")]


@pytest.mark.asyncio
async def test_answer_after_runner_died_is_expired(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    runner = await h.start()
    await h.ask(_question("Which?", "A", "B"))
    (post,) = h.chat.posts

    runner.finish()
    with pytest.raises(QuestionExpired):
        await h.protocol.select_option(h.press(post, _button(post, "select_option_0_0")))
    assert runner.answers == []


@pytest.mark.asyncio
async def test_answer_after_payload_lost_is_expired(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(_question("Which?", "A", "B"))
    (post,) = h.chat.posts
    button = _button(post, "select_option_0_0")

    h.payloads.remove(question_key(json.loads(button.value)["message_id"]))
    with pytest.raises(QuestionExpired):
        await h.protocol.select_option(h.press(post, button))
    assert h.runner.answers == []


@pytest.mark.asyncio
async def test_unknown_message_is_expired(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    value = ControlValue(message_id="ask-unknown", question_index=0, option_index=0).encode()
    action = ActionEvent(
        action_id="select_option_0_0",
        value=value,
        user_id="alice",
        channel_id="chan",
        message_ts="ts9",
        thread_id="t1",
    )
    with pytest.raises(QuestionExpired):
        await h.protocol.select_option(action)


@pytest.mark.asyncio
async def test_expire_runner_marks_open_questions(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    runner = await h.start()
    qset = await h.ask(_question("Which?", "A", "B"))
    (post,) = h.chat.posts

    runner.finish()
    assert await h.protocol.expire_runner(runner) == 1
    assert qset.state == QuestionState.EXPIRED
    assert "expired" in h.chat.updates[-1]["text"]
    assert len(h.payloads) == 0


@pytest.mark.asyncio
async def test_free_text_answer_through_modal(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    await h.start()
    await h.ask(_question("Name the module", "core", header="Module"))
    (post,) = h.chat.posts

    await h.protocol.open_text_input(h.press(post, _button(post, "text_input_0")))
    (modal,) = h.chat.modals
    assert modal["callback_id"] == TEXT_INPUT_CALLBACK
    assert modal["title"] == "Module"
    meta = ModalMetadata.decode(modal["metadata"])
    assert meta.request_id.startswith("proj:")
    assert meta.thread_id == "t1"

    with pytest.raises(InvalidAnswer):
        await h.protocol.submit_text_input(
            ViewSubmission(TEXT_INPUT_CALLBACK, modal["metadata"], "alice", {TEXT_INPUT_FIELD: " "})
        )

    await h.protocol.submit_text_input(
        ViewSubmission(
            TEXT_INPUT_CALLBACK, modal["metadata"], "alice", {TEXT_INPUT_FIELD: "plugins"}
        )
    )
    assert h.runner.answers == [("tu1", "plugins")]


@pytest.mark.asyncio
async def test_autopilot_answers_without_buttons(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir, autopilot=True)
    await h.start()
    qset = await h.ask(_question("Which?", "fast", "safe (Recommended)"))

    assert qset.state == QuestionState.RESOLVED
    assert h.runner.answers == [("tu1", "safe (Recommended)")]
    assert h.chat.posts_with_buttons() == []
    assert "Autopilot" in h.chat.posts[-1]["text"]


@pytest.mark.asyncio
async def test_interrupt_confirm_terminates_and_resumes(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir, autopilot=True)
    runner = await h.start()

    await h.protocol.offer_interrupt(
        h.session, InboundMessage("chan", "alice", "change of plan", "m5", thread_id="t1")
    )
    post = h.chat.posts[-1]
    yes = _button(post, "interrupt_yes")

    await h.protocol.confirm_interrupt(h.press(post, yes))

    assert runner.interrupts == 1
    assert not runner.is_alive
    assert h.resumed == [("t1", "change of plan")]
    assert h.sessions.workspaces.get("t1").autopilot is False

    with pytest.raises(QuestionExpired):
        await h.protocol.confirm_interrupt(h.press(post, yes))


@pytest.mark.asyncio
async def test_interrupt_decline_keeps_runner(tmp_path, project_dir):
    h = Harness(tmp_path, project_dir)
    runner = await h.start()

    await h.protocol.offer_interrupt(
        h.session, InboundMessage("chan", "alice", "hold on", "m6", thread_id="t1")
    )
    post = h.chat.posts[-1]
    await h.protocol.decline_interrupt(h.press(post, _button(post, "interrupt_no")))

    assert runner.is_alive
    assert h.resumed == []
    assert "Continuing" in h.chat.updates[-1]["text"]


def test_control_value_truncates_label_to_fit():
    value = ControlValue(
        message_id="ask-1", question_index=0, option_index=3, label="é" * 3000
    ).encode()
    assert len(value.encode("utf-8")) <= MAX_CONTROL_VALUE_BYTES
    decoded = ControlValue.decode(value)
    assert decoded.option_index == 3
    assert decoded.label and set(decoded.label) == {"é"}


def test_control_value_rejects_garbage():
    with pytest.raises(InvalidAnswer):
        ControlValue.decode("not json")
    with pytest.raises(InvalidAnswer):
        ControlValue.decode(json.dumps({"question_index": 0}))


def test_pick_autopilot_answer():
    q = Question(
        text="?",
        options=(QuestionOption("a"), QuestionOption("b (recommended)")),
    )
    assert pick_autopilot_answer(q) == "b (recommended)"
    assert pick_autopilot_answer(Question(text="?", options=(QuestionOption("x"),))) == "x"
