"""
Pass Round Runners — vibe-review

PURPOSE:
    Concrete implementations of the pass-round capability used by stage 1.
    A pass-round capability is any callable taking the round input dict and
    returning a RoundOutput (or a dict satisfying the round output contract).

    - CommandPassRound: runs a shell command, writes the provider prompt to its
      stdin and extracts the round output JSON from its stdout. Any agent CLI
      that can read a prompt from stdin plugs in this way.
    - GeminiPassRound: asks Gemini directly through the google-genai SDK with
      response_mime_type="application/json".

DESIGN DECISIONS:
    - Neither runner retries on malformed output. A round that does not
      satisfy the contract raises RoundOutputError and ends the run.
    - The prompt embeds the round input JSON verbatim, so the agent sees the
      attempt number, the budget and whether autofix is allowed.
"""

import json
import logging
import subprocess

from vibe_review.round_output import REVIEW_PASS_ORDER, RoundOutputError, parse_round_output_text

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"


def build_provider_prompt(round_input: dict) -> str:
    """Instructions plus the JSON contract plus the review context."""
    pass_enum = "|".join(REVIEW_PASS_ORDER)
    schema = (
        '{"version":1,"run_id":"string","passes":[{"name":"%s","summary":"string","findings":'
        '[{"id":"string","pass":"%s","severity":"P0|P1|P2|P3","title":"string","body":"string",'
        '"file":"string|null","line":1,"kind":"defect|regression|security|improvement|docs|refactor|test|null"}]}],'
        '"autofix":{"applied":true,"summary":"string|null","changed_files":["string"]}}'
    ) % (pass_enum, pass_enum)

    lines = [
        "You are a code review pass runner.",
        "Pass guidance:",
        "- implementation/security/quality/ops: keep findings concrete and tied to changed behavior.",
        "- ux: prioritize system consistency over subjective aesthetics "
        "(spacing, typography, hierarchy, states, accessibility).",
        "- ux: propose actionable fixes with concrete values when applicable.",
        "- report every pass exactly once, even when it has no findings.",
        "- keep severities strictly in P0|P1|P2|P3.",
        "Return ONLY a JSON object (no markdown) matching this schema:",
        schema,
        "",
        "Review context JSON:",
        json.dumps(round_input, indent=2),
    ]
    return "\n".join(lines)


class CommandPassRound:
    """Run one review round through a shell command."""

    def __init__(self, command: str, cwd: str = None, timeout: float = None):
        if not command or not command.strip():
            raise ValueError("review agent command is empty")
        self.command = command
        self.cwd = cwd
        self.timeout = timeout

    def __call__(self, round_input: dict):
        prompt = build_provider_prompt(round_input)
        logger.info("running review agent command for attempt %s", round_input.get("attempt"))
        completed = subprocess.run(
            ["bash", "-lc", self.command],
            input=prompt,
            capture_output=True,
            text=True,
            check=True,
            cwd=self.cwd,
            timeout=self.timeout,
        )
        if completed.stderr.strip():
            logger.debug("review agent stderr: %s", completed.stderr.strip()[:2000])
        return parse_round_output_text(completed.stdout)


class GeminiPassRound:
    """
    Run one review round with Gemini.

    The SDK is imported on first use so the rest of the package works without
    a Gemini key configured.
    """

    def __init__(self, api_key: str, model: str = DEFAULT_GEMINI_MODEL, temperature: float = 0.2):
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required for the Gemini review runner")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def __call__(self, round_input: dict):
        from google.genai import types

        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            temperature=self.temperature,
        )
        logger.info("running Gemini review (%s) for attempt %s", self.model, round_input.get("attempt"))
        response = self._get_client().models.generate_content(
            model=self.model,
            contents=build_provider_prompt(round_input),
            config=config,
        )
        raw_text = response.text or ""
        if not raw_text.strip():
            raise RoundOutputError("review agent returned an empty response")
        return parse_round_output_text(raw_text)
