"""
Tests for the shell-command and Gemini pass-round runners.
"""
import json
import subprocess
from unittest.mock import MagicMock, Mock, patch

import pytest
from conftest import make_finding, make_round

from vibe_review.pass_round_runners import CommandPassRound, GeminiPassRound, build_provider_prompt
from vibe_review.round_output import RoundOutputError

ROUND_INPUT = {"version": 1, "issue": {"id": 34, "title": "Add login", "url": None}, "attempt": 2}


def test_prompt_embeds_contract_and_context():
    prompt = build_provider_prompt(ROUND_INPUT)
    assert "implementation|security|quality|ux|ops" in prompt
    assert '"autofix"' in prompt
    assert prompt.endswith(json.dumps(ROUND_INPUT, indent=2))


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_command_runner_parses_stdout(mock_run):
    payload = json.dumps(make_round([make_finding()], run_id="cmd-run"))
    mock_run.return_value = Mock(stdout=f"agent log line\n{payload}\n", stderr="")

    output = CommandPassRound("my-agent --json", cwd="/repo")(ROUND_INPUT)

    assert output.run_id == "cmd-run"
    args, kwargs = mock_run.call_args
    assert args[0] == ["bash", "-lc", "my-agent --json"]
    assert kwargs["input"] == build_provider_prompt(ROUND_INPUT)
    assert kwargs["cwd"] == "/repo"
    assert kwargs["check"] is True


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_command_runner_malformed_output_is_fatal(mock_run):
    mock_run.return_value = Mock(stdout="I could not review this change.", stderr="")
    with pytest.raises(RoundOutputError):
        CommandPassRound("my-agent")(ROUND_INPUT)


@patch("vibe_review.pass_round_runners.subprocess.run")
def test_command_runner_failure_propagates(mock_run):
    mock_run.side_effect = subprocess.CalledProcessError(2, ["bash", "-lc", "my-agent"])
    with pytest.raises(subprocess.CalledProcessError):
        CommandPassRound("my-agent")(ROUND_INPUT)


def test_command_runner_requires_command():
    with pytest.raises(ValueError):
        CommandPassRound("  ")


def test_gemini_runner_requires_key():
    with pytest.raises(ValueError):
        GeminiPassRound("")


@patch("google.genai.Client")
def test_gemini_runner_requests_json(mock_client_cls):
    client = MagicMock()
    client.models.generate_content.return_value = Mock(text=json.dumps(make_round(run_id="gem")))
    mock_client_cls.return_value = client

    output = GeminiPassRound("key", model="gemini-test")(ROUND_INPUT)

    assert output.run_id == "gem"
    mock_client_cls.assert_called_once_with(api_key="key")
    kwargs = client.models.generate_content.call_args.kwargs
    assert kwargs["model"] == "gemini-test"
    assert kwargs["config"].response_mime_type == "application/json"
    assert kwargs["contents"] == build_provider_prompt(ROUND_INPUT)


@patch("google.genai.Client")
def test_gemini_empty_response_is_fatal(mock_client_cls):
    client = MagicMock()
    client.models.generate_content.return_value = Mock(text="")
    mock_client_cls.return_value = client
    with pytest.raises(RoundOutputError):
        GeminiPassRound("key")(ROUND_INPUT)
