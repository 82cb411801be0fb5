from __future__ import annotations

from scripts.server_init import git_sync, prompts


def _answers(*values: str):
    queue = list(values)
    return lambda _prompt: queue.pop(0)


def test_prompt_text_uses_default_on_blank() -> None:
    assert prompts.prompt_text("Branch", default="main", input_fn=_answers("")) == "main"
    assert prompts.prompt_text("Branch", default="main", input_fn=_answers("  develop ")) == "develop"


def test_prompt_environment_menu() -> None:
    assert prompts.prompt_environment(input_fn=_answers("2")) == "staging"
    assert prompts.prompt_environment(default="dev", input_fn=_answers("")) == "dev"
    assert prompts.prompt_environment(input_fn=_answers("9")) == "prod"


def test_prompt_credentials_skips_for_public_repo(monkeypatch) -> None:
    monkeypatch.setattr(git_sync, "ls_remote_heads", lambda url: True)
    creds = prompts.prompt_credentials("https://git.example/org/demo.git", input_fn=_answers())
    assert creds.is_empty


def test_prompt_credentials_token_and_password(monkeypatch) -> None:
    monkeypatch.setattr(git_sync, "ls_remote_heads", lambda url: False)
    monkeypatch.setattr(prompts.getpass, "getpass", lambda _prompt: "s3cret")

    token = prompts.prompt_credentials("https://git.example/org/demo.git", input_fn=_answers("1"))
    assert token.token == "s3cret"

    pair = prompts.prompt_credentials("https://git.example/org/demo.git", input_fn=_answers("2", "alice"))
    assert (pair.username, pair.password) == ("alice", "s3cret")

    skipped = prompts.prompt_credentials("https://git.example/org/demo.git", input_fn=_answers("3"))
    assert skipped.is_empty


def test_prompt_overrides_rejects_malformed_entries() -> None:
    entries = prompts.prompt_overrides(input_fn=_answers("API_URL=https://api", "oops", "DEBUG=false", "done"))
    assert entries == ["API_URL=https://api", "DEBUG=false"]


def test_confirm_defaults_to_yes() -> None:
    assert prompts.confirm("Continue?", input_fn=_answers("")) is True
    assert prompts.confirm("Continue?", input_fn=_answers("n")) is False
