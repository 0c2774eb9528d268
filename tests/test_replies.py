from datetime import datetime, timedelta

from conftest import NOON, FakeGenerator, RecordingDispatcher, ScriptedReplyChecker, make_task

from taskpilot.tasks.executor import TaskExecutor
from taskpilot.tasks.replies import InboundMessage, load_reply_wait
from taskpilot.tasks.updates import ExecutionContext, TaskUpdateQueue
from taskpilot.tools.catalog import ToolGateway

WAIT_FOR_REPORT = [
    {
        "step_id": 1,
        "tool": "wait_for_reply",
        "args": {
            "platform": "email",
            "contact": "sam@example.com",
            "original_request": "Send the Q3 report",
            "success_criteria": "The report is attached",
            "followup_after_hours": 1,
            "max_followups": 3,
        },
    },
    {"step_id": 2, "tool": "send_reminder", "args": {"message": "Sam said: {{reply_text}}"}},
]


class FailingReplyChecker:
    def check_for_replies(
        self,
        platform: str,
        contact: str,
        since: datetime,
        conversation_id: str | None,
    ) -> list[InboundMessage]:
        raise ConnectionError("imap down")


def _context(
    dispatcher: RecordingDispatcher,
    checker: object | None,
    generator: FakeGenerator | None = None,
) -> ExecutionContext:
    return ExecutionContext(
        updates=TaskUpdateQueue(),
        gateway=ToolGateway(dispatcher),
        reply_checker=checker,
        generator=generator,
    )


def _log(task) -> list[str]:
    return [entry.message for entry in task.execution_log]


def test_wait_for_reply_parks_the_task() -> None:
    executor = TaskExecutor(_context(RecordingDispatcher(), ScriptedReplyChecker()))

    result = executor.tick(make_task(WAIT_FOR_REPORT), NOON)
    state = load_reply_wait(result.task)

    assert result.events == ["waiting_for_reply"]
    assert result.task.status == "waiting"
    assert result.task.current_step.step == 2
    assert result.task.next_check == NOON + timedelta(minutes=5)
    assert state is not None
    assert state.contact == "sam@example.com"
    assert state.followups_sent == 0
    assert state.last_contacted_at == NOON


def test_follow_ups_stop_after_the_limit_and_ask_the_user() -> None:
    dispatcher = RecordingDispatcher()
    executor = TaskExecutor(_context(dispatcher, ScriptedReplyChecker()))
    task = make_task(WAIT_FOR_REPORT, auto_send=True)
    task = executor.tick(task, NOON).task

    for hours in (1, 2, 3):
        task = executor.tick(task, NOON + timedelta(hours=hours)).task
        assert task.status == "waiting"

    timed_out = executor.tick(task, NOON + timedelta(hours=4)).task

    assert [call[0] for call in dispatcher.calls] == ["send_email"] * 3
    assert dispatcher.calls[0][1] == {
        "to": "sam@example.com",
        "subject": "Following up",
        "body": "Hi, just following up on my earlier message: Send the Q3 report",
    }
    assert "Follow-up 3/3 to sam@example.com sent" in _log(timed_out)
    assert timed_out.status == "waiting_for_input"
    assert timed_out.context_memory["attention_reason"] == "reply_timeout"
    assert timed_out.execution_log[-1].message == (
        "Needs attention: No satisfying reply from sam@example.com after 3 follow-ups."
    )


def test_user_answer_after_timeout_counts_as_the_reply() -> None:
    dispatcher = RecordingDispatcher()
    context = _context(dispatcher, ScriptedReplyChecker())
    executor = TaskExecutor(context)
    task = executor.tick(make_task(WAIT_FOR_REPORT, auto_send=True), NOON).task
    for hours in (1, 2, 3, 4):
        task = executor.tick(task, NOON + timedelta(hours=hours)).task

    assert executor.provide_user_input(task, "He sent it on Slack", NOON) is None
    assert task.context_memory["reply_text"] == "He sent it on Slack"
    assert "reply_wait" not in task.context_memory
    assert "attention_reason" not in task.context_memory

    done = executor.tick(task, NOON + timedelta(hours=5))

    assert done.task.status == "completed"


def test_follow_up_window_is_respected() -> None:
    dispatcher = RecordingDispatcher()
    executor = TaskExecutor(_context(dispatcher, ScriptedReplyChecker()))
    task = executor.tick(make_task(WAIT_FOR_REPORT, auto_send=True), NOON).task

    task = executor.tick(task, NOON + timedelta(minutes=30)).task

    assert dispatcher.calls == []
    assert task.status == "waiting"
    assert load_reply_wait(task).last_checked_at == NOON + timedelta(minutes=30)


def test_satisfying_reply_resumes_the_plan() -> None:
    checker = ScriptedReplyChecker([[], ["Attached the Q3 report."]])
    generator = FakeGenerator([{"satisfied": True, "reasoning": "Report attached"}])
    context = _context(RecordingDispatcher(), checker, generator)
    executor = TaskExecutor(context)
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    quiet = executor.tick(task, NOON + timedelta(minutes=5)).task
    replied = executor.tick(quiet, NOON + timedelta(minutes=10))

    assert checker.calls[1]["since"] == NOON + timedelta(minutes=5)
    assert checker.calls[1]["contact"] == "sam@example.com"
    assert "The report is attached" in generator.prompts[0]
    assert replied.task.status == "completed"
    assert replied.task.context_memory["reply_text"] == "Attached the Q3 report."
    assert replied.task.context_memory["reply_received"] == "true"
    assert "Reply from sam@example.com received: Report attached" in _log(replied.task)
    chats = [update.chat_message for update in context.updates.drain()]
    assert any(chat.startswith("📬") for chat in chats)
    assert any("Sam said: Attached the Q3 report." in chat for chat in chats)


def test_unsatisfying_reply_keeps_waiting() -> None:
    checker = ScriptedReplyChecker([["Will do tomorrow"]])
    generator = FakeGenerator([{"satisfied": False, "reasoning": "No attachment yet"}])
    executor = TaskExecutor(_context(RecordingDispatcher(), checker, generator))
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    task = executor.tick(task, NOON + timedelta(minutes=5)).task

    assert task.status == "waiting"
    assert task.execution_log[-1].message == (
        "Reply from sam@example.com did not satisfy the request: No attachment yet"
    )


def test_unjudged_reply_is_handed_to_the_user() -> None:
    checker = ScriptedReplyChecker([["Here you go"]])
    executor = TaskExecutor(_context(RecordingDispatcher(), checker, generator=None))
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    task = executor.tick(task, NOON + timedelta(minutes=5)).task

    assert task.status == "waiting_for_input"
    assert task.context_memory["attention_reason"] == "reply_unverified"
    assert task.context_memory["unverified_reply"] == "Here you go"

    executor.provide_user_input(task, "Yes, that is the report", NOON + timedelta(minutes=6))

    assert task.status == "active"
    assert task.context_memory["reply_text"] == "Yes, that is the report"
    assert "unverified_reply" not in task.context_memory


def test_staged_follow_up_returns_to_waiting_after_approval() -> None:
    dispatcher = RecordingDispatcher()
    executor = TaskExecutor(_context(dispatcher, ScriptedReplyChecker()))
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    task = executor.tick(task, NOON + timedelta(hours=1)).task

    assert task.status == "waiting_approval"
    assert "Follow-up 1/3 to sam@example.com staged for approval" in _log(task)
    assert load_reply_wait(task).followups_sent == 1

    executor.approve_pending_message(task, task.pending_messages[0].id, NOON + timedelta(hours=1))

    assert task.status == "waiting"
    assert [call[0] for call in dispatcher.calls] == ["send_email"]


def test_missing_reply_checker_asks_the_user() -> None:
    executor = TaskExecutor(_context(RecordingDispatcher(), checker=None))
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    task = executor.tick(task, NOON + timedelta(minutes=5)).task

    assert task.status == "waiting_for_input"
    assert task.context_memory["attention_reason"] == "reply_unavailable"


def test_reply_check_errors_are_retried_next_poll() -> None:
    executor = TaskExecutor(_context(RecordingDispatcher(), FailingReplyChecker()))
    task = executor.tick(make_task(WAIT_FOR_REPORT), NOON).task

    result = executor.tick(task, NOON + timedelta(minutes=5))

    assert result.task.status == "waiting"
    assert result.task.execution_log[-1].message == "Reply check failed: imap down"
    assert result.task.next_check == NOON + timedelta(minutes=10)
