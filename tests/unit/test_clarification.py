from __future__ import annotations

import json
import threading
from typing import List

from planwright.errors import ClarificationRequired
from planwright.models.client import ScriptedClient
from planwright.planning.clarification import (
    ClarificationLoop,
    ExecutionFeedback,
    OutcomeStatus,
    build_auto_answer,
    build_follow_up,
    extract_questions,
    needs_clarification,
)
from planwright.planning.workflow import ClarificationRequest, FailureContext
from planwright.schema import GeneratedPlan

QUESTIONING = "```json\n" + json.dumps(
    {"phase": "planning", "isClear": False, "questions": ["Which styling library?"]}
) + "\n```"

READY = "```json\n" + json.dumps(
    {
        "phase": "planning",
        "isClear": True,
        "plan": {"filesToCreate": ["app/a/page.tsx"], "executionOrder": ["Create"]},
        "codeBlocks": [{"filePath": "app/a/page.tsx", "content": "export default function A() { return null; }\n"}],
    }
) + "\n```"


def test_loop_stops_at_depth_five_when_model_keeps_asking() -> None:
    client = ScriptedClient(lambda prompt, history: QUESTIONING)
    loop = ClarificationLoop(client)

    outcome = loop.run("Add a page", QUESTIONING)

    assert outcome.status == OutcomeStatus.MANUAL_INTERVENTION
    assert outcome.depth == 5
    assert len(client.calls) == 5
    assert not outcome.resolved
    assert outcome.open_questions == ["Which styling library?"]
    assert "Manual intervention" in outcome.message


def test_questions_are_auto_answered_then_resolved() -> None:
    client = ScriptedClient([READY])
    executed: List[GeneratedPlan] = []

    def execute(plan: GeneratedPlan, response: str) -> ExecutionFeedback:
        executed.append(plan)
        return ExecutionFeedback(written=["app/a/page.tsx"])

    outcome = ClarificationLoop(client).run("Add a page", QUESTIONING, execute=execute)

    assert outcome.status == OutcomeStatus.RESOLVED
    assert outcome.depth == 1
    assert len(executed) == 1
    directive = client.calls[0].prompt
    assert "1. Which styling library?" in directive
    assert "Original request: Add a page" in directive
    assert [message["role"] for message in outcome.history] == ["user", "assistant"]
    assert outcome.steps[0].reason == "questions"


def test_execution_conflicts_are_fed_back_until_clean() -> None:
    conflict = ClarificationRequest(
        target_path="app/a/page.tsx",
        kind="conflict",
        file_exists=True,
        prompt_text="app/a/page.tsx already exists, so it was not created.",
        alternatives=["Switch the action for app/a/page.tsx to MODIFY"],
    )
    rounds = iter([ExecutionFeedback(clarifications=[conflict]), ExecutionFeedback()])
    client = ScriptedClient([READY])

    outcome = ClarificationLoop(client).run("Add a page", READY, execute=lambda plan, response: next(rounds))

    assert outcome.resolved
    assert outcome.depth == 1
    assert "Switch the action for app/a/page.tsx to MODIFY" in client.calls[0].prompt
    assert outcome.steps[0].reason == "execution"


def test_plain_text_without_questions_has_no_payload() -> None:
    client = ScriptedClient([])

    outcome = ClarificationLoop(client).run("Add a page", "I made the change for you.")

    assert outcome.status == OutcomeStatus.NO_PAYLOAD
    assert outcome.depth == 0
    assert client.calls == []


def test_cancelled_loop_does_not_call_the_model() -> None:
    cancel = threading.Event()
    cancel.set()
    client = ScriptedClient([READY])

    outcome = ClarificationLoop(client, cancel_event=cancel).run("Add a page", QUESTIONING)

    assert outcome.status == OutcomeStatus.CANCELLED
    assert client.calls == []


def test_question_detection_ignores_code_blocks() -> None:
    code_only = "Done.\n```ts\nconst isReady = value ? 1 : 2;\nconsole.log('ok?')\n```"
    asking = "I have a plan. Which database do you want to use?"

    assert not needs_clarification(code_only)
    assert needs_clarification(asking)
    assert extract_questions(asking) == ["Which database do you want to use?"]


def test_structured_flags_override_prose_heuristics() -> None:
    clear = GeneratedPlan.model_validate({"phase": "planning", "isClear": True})
    unclear = GeneratedPlan.model_validate({"phase": "planning", "isClear": False})

    assert not needs_clarification("Is this fine?", clear)
    assert needs_clarification("", unclear)


def test_follow_up_describes_failures_and_written_files() -> None:
    failure = ClarificationRequest(
        target_path="lib/a.ts",
        kind="failure",
        prompt_text="Writing lib/a.ts failed",
        failure_context=FailureContext(
            operation="create",
            error_message="Permission denied",
            error_type="permission",
            suggestions=["Check the file and directory permissions."],
        ),
    )

    prompt = build_follow_up([failure], "Add utils", written=["lib/b.ts"])

    assert "Operation: create" in prompt
    assert "Error type: permission" in prompt
    assert "- Check the file and directory permissions." in prompt
    assert "Already written, do not recreate: lib/b.ts" in prompt


def test_auto_answer_includes_context_when_given() -> None:
    prompt = build_auto_answer(["Which router?"], "Add a page", context="Next.js app router")

    assert "Project context:" in prompt
    assert "Next.js app router" in prompt
    assert "isClear" in prompt


def test_clarification_required_carries_request_summary() -> None:
    request = ClarificationRequest(target_path="a.ts", prompt_text="exists", kind="conflict")

    error = ClarificationRequired(request)

    assert error.request is request
    assert str(error) == "Clarification needed (conflict) for a.ts"
