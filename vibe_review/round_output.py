"""
Round Output Contract — vibe-review

PURPOSE:
    Define the JSON contract the reviewing agent must return for one review
    round, and turn raw agent output into validated models.

    The agent is a black box. Whatever it prints, we either get back a
    RoundOutput that satisfies the contract or raise RoundOutputError. A
    non-conforming round is FATAL for the whole run: the attempt loop does not
    retry it.

CONTRACT:
    {
      "version": 1,
      "run_id": "non-empty string",
      "passes": [ one entry per pass name in REVIEW_PASS_ORDER ],
      "autofix": {"applied": bool, "summary": str|null, "changed_files": [str]}
    }

    Each pass: {"name": <pass>, "summary": str, "findings": [Finding]}
    Each finding: {"id", "pass", "severity": P0-P3, "title", "body",
                   "file"?, "line"?, "kind"?}

DESIGN DECISIONS:
    - Agents wrap JSON in prose or Markdown code fences despite instructions,
      so parse_round_output_text() tries several candidates (whole text, each
      line, ```json blocks, first-brace-to-last-brace) and also looks inside
      nested values (some CLIs emit {"result": "<json string>"}).
    - line is strict: "10" as a string is rejected rather than coerced.
"""

import json
import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

REVIEW_PASS_ORDER = ("implementation", "security", "quality", "ux", "ops")

PassName = Literal["implementation", "security", "quality", "ux", "ops"]
Severity = Literal["P0", "P1", "P2", "P3"]
FindingKind = Literal["defect", "regression", "security", "improvement", "docs", "refactor", "test"]


class RoundOutputError(Exception):
    """The reviewing agent returned output that does not match the contract."""


class Finding(BaseModel):
    """One issue reported by a review pass."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    pass_: PassName = Field(alias="pass")
    severity: Severity
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    file: Optional[str] = Field(default=None, min_length=1)
    line: Optional[int] = Field(default=None, gt=0, strict=True)
    kind: Optional[FindingKind] = None

    def location(self) -> str:
        """'file:line', 'file', or '' when the finding has no file."""
        if self.file and self.line:
            return f"{self.file}:{self.line}"
        return self.file or ""


class ReviewPassResult(BaseModel):
    name: PassName
    summary: str = Field(min_length=1)
    findings: List[Finding] = Field(default_factory=list)


class Autofix(BaseModel):
    applied: bool = Field(strict=True)
    summary: Optional[str] = None
    changed_files: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _changed_files_not_blank(self):
        if any(not name for name in self.changed_files):
            raise ValueError("autofix.changed_files entries must be non-empty strings")
        return self


class RoundOutput(BaseModel):
    """Validated output of one review round."""

    version: Literal[1]
    run_id: str = Field(min_length=1)
    passes: List[ReviewPassResult]
    autofix: Autofix

    @model_validator(mode="after")
    def _every_pass_exactly_once(self):
        names = [p.name for p in self.passes]
        if len(names) != len(REVIEW_PASS_ORDER) or set(names) != set(REVIEW_PASS_ORDER):
            raise ValueError(
                "passes must include exactly once: " + ", ".join(REVIEW_PASS_ORDER)
            )
        return self

    def findings(self) -> List[Finding]:
        """All findings of the round, in pass order as reported."""
        flattened = []
        for review_pass in self.passes:
            flattened.extend(review_pass.findings)
        return flattened


def parse_round_output(value: Any) -> RoundOutput:
    """
    Validate a round output given as a RoundOutput or a plain dict.

    Raises:
        RoundOutputError: if the value does not satisfy the contract.
    """
    if isinstance(value, RoundOutput):
        return value
    try:
        return RoundOutput.model_validate(value)
    except ValidationError as e:
        raise RoundOutputError(f"review agent output schema mismatch: {e}") from e


def parse_round_output_text(raw: str) -> RoundOutput:
    """
    Extract and validate a round output from raw agent stdout.

    Returns the first candidate (or nested value inside a candidate) that
    satisfies the contract.

    Raises:
        RoundOutputError: when no candidate matches. The message carries the
                          first 500 characters of the output.
    """
    for candidate in _collect_json_candidates(raw or ""):
        for value in [candidate, *_collect_nested_values(candidate)]:
            try:
                return RoundOutput.model_validate(value)
            except ValidationError:
                continue

    snippet = (raw or "").strip()[:500]
    raise RoundOutputError(f"review agent output schema mismatch. Sample output: {snippet}")


# ---------------------------------------------------------------------------
# PRIVATE HELPER FUNCTIONS
# ---------------------------------------------------------------------------

_CODE_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)


def _parse_json_candidate(value: str) -> Any:
    text = value.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _collect_json_candidates(raw: str) -> list:
    candidates = []

    whole = _parse_json_candidate(raw)
    if whole is not None:
        candidates.append(whole)

    for line in raw.splitlines():
        parsed = _parse_json_candidate(line)
        if parsed is not None:
            candidates.append(parsed)

    for match in _CODE_BLOCK_RE.finditer(raw):
        parsed = _parse_json_candidate(match.group(1))
        if parsed is not None:
            candidates.append(parsed)

    first_brace = raw.find("{")
    last_brace = raw.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        parsed = _parse_json_candidate(raw[first_brace:last_brace + 1])
        if parsed is not None:
            candidates.append(parsed)

    return candidates


def _collect_nested_values(value: Any) -> list:
    nested = []
    if isinstance(value, str):
        parsed = _parse_json_candidate(value)
        if parsed is not None:
            nested.append(parsed)
        return nested

    if isinstance(value, list):
        entries = value
    elif isinstance(value, dict):
        entries = list(value.values())
    else:
        return nested

    for entry in entries:
        nested.append(entry)
        nested.extend(_collect_nested_values(entry))
    return nested
