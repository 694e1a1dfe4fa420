from __future__ import annotations

import json

from planwright.planning.extraction import (
    extract,
    extract_payload,
    extract_plan,
    fenced_blocks,
    repair_json,
    scan_balanced,
)
from planwright.schema import PlanPhase


STRICT_PAYLOAD = {
    "phase": "planning",
    "analysis": "Add a hello page",
    "isClear": True,
    "plan": {
        "filesToCreate": [{"path": "app/hello/page.tsx"}],
        "executionOrder": ["Create the page"],
    },
}


def test_extract_returns_plan_from_fenced_json_with_prose() -> None:
    text = "Sure! Here is my plan:\n```json\n" + json.dumps(STRICT_PAYLOAD) + "\n```\nLet me know."

    result = extract(text)

    assert result.found
    assert result.source == "fenced"
    assert result.plan is not None
    assert result.plan.phase == PlanPhase.PLANNING
    assert result.plan.create_paths() == ["app/hello/page.tsx"]


def test_extract_prefers_last_json_block() -> None:
    first = dict(STRICT_PAYLOAD, analysis="first draft")
    second = dict(STRICT_PAYLOAD, analysis="final answer")
    text = (
        "Draft:\n```json\n" + json.dumps(first) + "\n```\n"
        "Corrected:\n```json\n" + json.dumps(second) + "\n```\n"
    )

    plan = extract_plan(text)

    assert plan is not None
    assert plan.analysis == "final answer"


def test_extract_is_idempotent_for_well_formed_payload() -> None:
    first = extract_plan(json.dumps(STRICT_PAYLOAD))
    assert first is not None

    second = extract_plan(json.dumps(first.to_payload()))

    assert second is not None
    assert second.to_payload() == first.to_payload()


def test_lenient_payload_matches_strict_equivalent() -> None:
    lenient = """```json
{
  'phase': 'planning', // chosen phase
  'analysis': 'Add a hello page',
  'isClear': true,
  'plan': {
    'filesToCreate': [{'path': 'app/hello/page.tsx'}],
    'executionOrder': ['Create the page'],
  }
}
```"""

    relaxed = extract_plan(lenient)
    strict = extract_plan(json.dumps(STRICT_PAYLOAD))

    assert relaxed is not None and strict is not None
    assert relaxed.to_payload() == strict.to_payload()


def test_scenario_single_quotes_and_trailing_comma_inside_prose() -> None:
    text = "Here is the plan: ```json {'phase': 'planning', 'plan': {},} ``` Hope that helps!"

    payload = extract_payload(text)

    assert payload is not None
    assert payload["phase"] == "planning"


def test_truncated_payload_recovers_balanced_prefix() -> None:
    text = (
        '```json\n{"phase": "planning", "analysis": "x", '
        '"plan": {"filesToCreate": ["a.ts"]}, '
        '"codeBlocks": [{"filePath": "a.ts", "content": "export const a = 1;"}'
    )

    plan = extract_plan(text)

    assert plan is not None
    assert plan.create_paths() == ["a.ts"]
    assert plan.code_block_paths() == ["a.ts"]


def test_payload_cut_inside_string_is_closed() -> None:
    plan = extract_plan('{"phase": "planning", "analysis": "some text that is cut')

    assert plan is not None
    assert plan.analysis == "some text that is cut"


def test_garbage_never_raises() -> None:
    for text in ("", "   ", "Sure, I can help.", "{{{[[[", '{"a": ', "```json\n", "}{"):
        result = extract(text)
        assert result.plan is None
        assert result.reason


def test_reason_distinguishes_plain_text_from_foreign_json() -> None:
    assert extract("").reason == "empty response"
    assert extract("No JSON here at all.").reason == "no structured payload found"
    assert extract('{"foo": 1}').reason == "no candidate carried phase, plan or tasks"


def test_typographic_quotes_and_bare_keys_are_repaired() -> None:
    plan = extract_plan('{phase: “execution”, tasks: [{type: "create", target: "a.ts"}]}')

    assert plan is not None
    assert plan.phase == PlanPhase.EXECUTION
    assert plan.tasks[0].type == "create"
    assert plan.tasks[0].target == "a.ts"


def test_repair_json_leaves_string_contents_alone() -> None:
    repaired = repair_json('{"url": "http://example.com", "note": "a, }"}')

    assert json.loads(repaired) == {"url": "http://example.com", "note": "a, }"}


def test_fenced_blocks_reports_unclosed_trailing_block() -> None:
    blocks = fenced_blocks("```ts:src/a.ts\nconst a = 1;\n```\n```json\n{")

    assert [block.language for block in blocks] == ["ts", "json"]
    assert blocks[0].path == "src/a.ts"
    assert blocks[0].closed
    assert not blocks[1].closed


def test_scan_balanced_tracks_quotes_and_depth() -> None:
    text = '{"a": "}", "b": [1, 2]}'

    scan = scan_balanced(text, 0)

    assert scan.balanced
    assert scan.end == len(text) - 1


def test_apostrophe_inside_line_comment_does_not_hide_payload() -> None:
    text = '```json\n{ "phase": "planning", // don\'t change this\n "plan": {} }\n```'

    result = extract(text)

    assert result.plan is not None
    assert result.plan.phase == PlanPhase.PLANNING


def test_scan_skips_block_comments() -> None:
    text = '{"a": 1 /* it\'s { open */, "b": [2]}'

    result = scan_balanced(text, 0)

    assert result.end == len(text) - 1
