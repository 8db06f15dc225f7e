"""Per-intent output validation and scoring.

Each intent has a rule set: a function that inspects generated text and
returns a list of Check results. The score starts at 100 and loses each
failed check's penalty (floored at 0). A retry is warranted when the score
is under the threshold or any *required* check failed.

Adding an intent means adding one rule set to RULE_SETS.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from qarag.models import Intent

_PLACEHOLDER_RE = re.compile(
    r"\[TODO\]|\bTODO\b|\bTBD\b|to be determined|\bplaceholder\b|lorem ipsum|\[insert[^\]]*\]",
    re.IGNORECASE,
)
_TABLE_SEPARATOR_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(?:\|\s*:?-{3,}:?\s*)*\|?\s*$")
_TEST_ID_RE = re.compile(r"\bTC[_\-][A-Z0-9_\-]+?[_\-]\d{2,}\b")
_NUMBERED_STEP_RE = re.compile(r"^\s*\d+[.)]\s+\S", re.MULTILINE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+\S", re.MULTILINE)
_HEADING_RE = re.compile(r"^#{1,4}\s+\S", re.MULTILINE)
_CODE_BLOCK_RE = re.compile(r"```")
_FRAMEWORKS = ("playwright", "selenium", "cypress", "puppeteer", "webdriver", "testcafe")
_ACTIONABLE_RE = re.compile(
    r"\b(?:use|implement|create|add|configure|install|run|replace|wrap|extract|set up)\b",
    re.IGNORECASE,
)

_TEST_CASE_COLUMNS: dict[str, tuple[str, ...]] = {
    "ID": ("id",),
    "Description": ("description", "title", "scenario", "test case"),
    "Steps": ("steps", "test steps"),
    "Expected": ("expected",),
    "Priority": ("priority",),
    "Type": ("type",),
}

_MIN_POSITIVE = 3
_MIN_NEGATIVE = 3
_MIN_EDGE = 2


@dataclass(frozen=True)
class Check:
    name: str
    passed: bool
    penalty: int
    required: bool = False
    message: str = ""
    suggestion: str = ""


@dataclass
class ValidationReport:
    intent: Intent
    score: int
    checks: list[Check]
    threshold: int
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> list[Check]:
        return [c for c in self.checks if not c.passed]

    @property
    def failed_checks(self) -> list[str]:
        return [c.message or c.name for c in self.failed]

    @property
    def suggestions(self) -> list[str]:
        return [c.suggestion for c in self.failed if c.suggestion]

    @property
    def required_failed(self) -> bool:
        return any(c.required for c in self.failed)

    @property
    def retry_warranted(self) -> bool:
        return self.score < self.threshold or self.required_failed


@dataclass(frozen=True)
class ValidationContext:
    min_test_cases: int = 10


RuleSet = Callable[[str, ValidationContext], tuple[list[Check], dict[str, Any]]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _placeholder_check(text: str, penalty: int) -> Check:
    found = _PLACEHOLDER_RE.findall(text)
    return Check(
        "no_placeholders",
        not found,
        penalty,
        message=f"Contains placeholder text ({', '.join(sorted(set(found))[:3])})" if found else "",
        suggestion="Replace every placeholder (TODO, TBD, [insert ...]) with concrete content.",
    )


def _has_section(text: str, *labels: str) -> bool:
    """True when a line starts with one of *labels* as a heading, bold label
    or ``Label:`` prefix."""
    alternatives = "|".join(labels)
    pattern = re.compile(
        rf"^\s*(?:#+\s*|\*\*|__)?\s*(?:{alternatives})\b",
        re.IGNORECASE | re.MULTILINE,
    )
    return bool(pattern.search(text))


def parse_markdown_table(text: str) -> tuple[list[str], list[list[str]]]:
    """Return ``(header_cells, data_rows)`` of the first markdown table in *text*."""
    lines = text.splitlines()
    for i in range(len(lines) - 1):
        if "|" in lines[i] and _TABLE_SEPARATOR_RE.match(lines[i + 1]):
            header = _split_row(lines[i])
            rows: list[list[str]] = []
            for line in lines[i + 2 :]:
                if "|" not in line:
                    break
                if _TABLE_SEPARATOR_RE.match(line):
                    continue
                rows.append(_split_row(line))
            return header, rows
    return [], []


def _split_row(line: str) -> list[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split("|")]


def _column_index(header: list[str], aliases: tuple[str, ...]) -> int | None:
    for i, cell in enumerate(header):
        lowered = cell.lower()
        if any(lowered == a or lowered.startswith(a) for a in aliases):
            return i
    return None


# ---------------------------------------------------------------------------
# Rule sets
# ---------------------------------------------------------------------------


def _test_case_rules(text: str, ctx: ValidationContext) -> tuple[list[Check], dict[str, Any]]:
    header, rows = parse_markdown_table(text)
    has_table = bool(header)
    checks = [
        Check(
            "markdown_table",
            has_table,
            20,
            required=True,
            message="Output is not a markdown table",
            suggestion="Format the test cases as a markdown table with a header row and a |---| separator.",
        )
    ]

    col_idx = {name: _column_index(header, aliases) for name, aliases in _TEST_CASE_COLUMNS.items()}
    missing_cols = [name for name, idx in col_idx.items() if idx is None]
    for name in missing_cols if has_table else []:
        checks.append(
            Check(
                f"column_{name.lower()}",
                False,
                5,
                message=f"Missing '{name}' column",
                suggestion=f"Add a '{name}' column to the table.",
            )
        )

    n_rows = len(rows)
    shortfall = max(0, ctx.min_test_cases - n_rows)
    checks.append(
        Check(
            "min_test_cases",
            shortfall == 0,
            min(30, 5 * shortfall),
            required=True,
            message=f"Only {n_rows} test cases (minimum {ctx.min_test_cases})",
            suggestion=f"Provide at least {ctx.min_test_cases} distinct test cases.",
        )
    )

    type_idx = col_idx["Type"]

    def row_type(row: list[str]) -> str:
        cell = row[type_idx] if type_idx is not None and type_idx < len(row) else " ".join(row)
        return cell.lower()

    types = [row_type(r) for r in rows]
    positive = sum(1 for t in types if "positive" in t)
    negative = sum(1 for t in types if "negative" in t)
    edge = sum(1 for t in types if "edge" in t or "boundary" in t)
    for name, count, minimum, label in (
        ("positive_cases", positive, _MIN_POSITIVE, "positive"),
        ("negative_cases", negative, _MIN_NEGATIVE, "negative"),
        ("edge_cases", edge, _MIN_EDGE, "edge-case"),
    ):
        checks.append(
            Check(
                name,
                count >= minimum,
                10,
                required=count == 0,
                message=f"Only {count} {label} test cases (minimum {minimum})",
                suggestion=f"Add {label} scenarios (at least {minimum}).",
            )
        )

    ids = sum(1 for r in rows if r and _TEST_ID_RE.search(r[0]))
    checks.append(
        Check(
            "test_ids",
            n_rows > 0 and ids * 2 >= n_rows,
            5,
            message="Test cases lack TC_<MODULE>_<NNN> identifiers",
            suggestion="Number every test case with an ID such as TC_LOGIN_001.",
        )
    )

    steps_idx = col_idx["Steps"]
    vague = 0
    if steps_idx is not None:
        vague = sum(1 for r in rows if steps_idx >= len(r) or len(r[steps_idx]) < 12)
    checks.append(
        Check(
            "specific_steps",
            not rows or vague * 10 <= len(rows) * 3,
            15,
            message=f"{vague} test cases have vague or missing steps",
            suggestion="Write concrete, numbered steps with the exact inputs to use.",
        )
    )
    checks.append(_placeholder_check(text, 5))

    priority_idx = col_idx["Priority"]
    priorities = {"high": 0, "medium": 0, "low": 0}
    if priority_idx is not None:
        for r in rows:
            cell = r[priority_idx].lower() if priority_idx < len(r) else ""
            for level in priorities:
                if level in cell:
                    priorities[level] += 1
                    break

    def share(count: int) -> float:
        return round(100.0 * count / n_rows, 1) if n_rows else 0.0

    metrics = {
        "test_cases": n_rows,
        "positive": positive,
        "negative": negative,
        "edge": edge,
        "coverage_pct": {"positive": share(positive), "negative": share(negative), "edge": share(edge)},
        "priority": priorities,
        "with_ids": ids,
        "missing_columns": missing_cols if has_table else list(_TEST_CASE_COLUMNS),
    }
    return checks, metrics


def _bug_report_rules(text: str, ctx: ValidationContext) -> tuple[list[Check], dict[str, Any]]:
    sections = (
        ("title", ("title", "summary", "bug title"), "Title"),
        ("description", ("description",), "Description"),
        ("steps_to_reproduce", ("steps to reproduce", "reproduction steps", "steps"), "Steps to Reproduce"),
        ("expected_behavior", ("expected",), "Expected Behavior"),
        ("actual_behavior", ("actual",), "Actual Behavior"),
    )
    checks = [
        Check(
            name,
            _has_section(text, *labels),
            15,
            required=True,
            message=f"Missing '{label}' section",
            suggestion=f"Add a '{label}' section.",
        )
        for name, labels, label in sections
    ]
    steps = len(_NUMBERED_STEP_RE.findall(text))
    checks.append(
        Check(
            "numbered_steps",
            steps >= 3,
            10,
            message=f"Only {steps} numbered reproduction steps",
            suggestion="List at least 3 numbered reproduction steps.",
        )
    )
    checks.append(
        Check(
            "environment",
            bool(re.search(r"\b(?:environment|browser|os|device|version)\b", text, re.IGNORECASE)),
            5,
            message="No environment details",
            suggestion="State the environment (browser, OS, app version).",
        )
    )
    checks.append(
        Check(
            "priority",
            bool(re.search(r"\b(?:priority|severity)\b", text, re.IGNORECASE)),
            5,
            message="No priority or severity",
            suggestion="Assign a priority or severity.",
        )
    )
    checks.append(_placeholder_check(text, 10))
    return checks, {"numbered_steps": steps}


def _test_plan_rules(text: str, ctx: ValidationContext) -> tuple[list[Check], dict[str, Any]]:
    sections = (
        ("objectives", ("objectives?", "goals?"), "Objectives"),
        ("scope", ("scope", "in scope"), "Scope"),
        ("approach", ("approach", "strategy", "test approach", "test strategy"), "Approach"),
        ("test_types", ("test types", "types of testing", "testing types"), "Test Types"),
    )
    checks = [
        Check(
            name,
            _has_section(text, *labels),
            15,
            required=True,
            message=f"Missing '{label}' section",
            suggestion=f"Add a '{label}' section.",
        )
        for name, labels, label in sections
    ]
    headings = len(_HEADING_RE.findall(text))
    checks.append(
        Check(
            "structure",
            headings >= 5,
            10,
            message=f"Only {headings} headed sections (minimum 5)",
            suggestion="Organise the plan into at least 5 headed sections.",
        )
    )
    items = len(_LIST_ITEM_RE.findall(text))
    checks.append(
        Check(
            "lists",
            items >= 3,
            5,
            message="Plan has no itemised lists",
            suggestion="Use bullet lists for scope items, risks and deliverables.",
        )
    )
    checks.append(_placeholder_check(text, 10))
    return checks, {"headings": headings, "list_items": items}


def _automation_rules(text: str, ctx: ValidationContext) -> tuple[list[Check], dict[str, Any]]:
    lowered = text.lower()
    frameworks = [f for f in _FRAMEWORKS if f in lowered]
    code_blocks = len(_CODE_BLOCK_RE.findall(text)) // 2
    suggestions = len(_LIST_ITEM_RE.findall(text)) + len(_HEADING_RE.findall(text))
    checks = [
        Check(
            "code_example",
            code_blocks >= 1,
            20,
            required=True,
            message="No code example",
            suggestion="Include at least one fenced code example.",
        ),
        Check(
            "framework",
            bool(frameworks),
            15,
            required=True,
            message="No automation framework named",
            suggestion="Name the framework to use (Playwright, Selenium, Cypress ...).",
        ),
        Check(
            "suggestion_count",
            suggestions >= 3,
            10,
            message=f"Only {suggestions} distinct suggestions",
            suggestion="Give at least 3 separate automation suggestions.",
        ),
        Check(
            "actionable",
            bool(_ACTIONABLE_RE.search(text)),
            5,
            message="Suggestions are not actionable",
            suggestion="Phrase each suggestion as a concrete action.",
        ),
        _placeholder_check(text, 10),
    ]
    return checks, {"frameworks": frameworks, "code_blocks": code_blocks, "suggestions": suggestions}


def _prose_rules(text: str, ctx: ValidationContext) -> tuple[list[Check], dict[str, Any]]:
    stripped = text.strip()
    checks = [
        Check(
            "non_empty",
            bool(stripped),
            100,
            required=True,
            message="Empty answer",
            suggestion="Answer the question using the provided context.",
        ),
        Check(
            "substantive",
            len(stripped) >= 40,
            30,
            message="Answer is too short to be useful",
            suggestion="Give a complete answer that cites the relevant document content.",
        ),
        _placeholder_check(text, 20),
    ]
    return checks, {"length": len(stripped)}


RULE_SETS: dict[Intent, RuleSet] = {
    Intent.TEST_CASE_GENERATION: _test_case_rules,
    Intent.BUG_REPORT_FORMATTING: _bug_report_rules,
    Intent.TEST_PLAN_CREATION: _test_plan_rules,
    Intent.AUTOMATION_SUGGESTION: _automation_rules,
    Intent.DOCUMENT_ANALYSIS: _prose_rules,
    Intent.GENERAL_QA_QUESTION: _prose_rules,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class OutputValidator:
    def __init__(self, threshold: int = 75, min_test_cases: int = 10) -> None:
        self.threshold = threshold
        self._ctx = ValidationContext(min_test_cases=min_test_cases)

    def validate(self, intent: Intent, text: str) -> ValidationReport:
        checks, metrics = RULE_SETS[intent](text, self._ctx)
        penalty = sum(c.penalty for c in checks if not c.passed)
        return ValidationReport(
            intent=intent,
            score=max(0, 100 - penalty),
            checks=checks,
            threshold=self.threshold,
            metrics=metrics,
        )


def improvement_prompt(report: ValidationReport, attempt: int) -> str:
    """Retry instructions naming what the previous attempt was missing.

    *attempt* is the number of the attempt being corrected, so each retry
    prompt differs from the last.
    """
    lines = [
        f"IMPORTANT: Attempt {attempt} had quality issues (score {report.score}/100). "
        "Produce a complete, corrected answer that fixes all of them.",
        "",
        "ISSUES FOUND:",
        *(f"- {issue}" for issue in report.failed_checks),
    ]
    if report.suggestions:
        lines += ["", "SUGGESTIONS:", *(f"- {s}" for s in report.suggestions)]
    return "\n".join(lines)
