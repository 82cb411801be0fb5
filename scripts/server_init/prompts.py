"""Interactive prompts for values not supplied on the command line."""
from __future__ import annotations

import getpass
from typing import Callable

from scripts.server_init import git_sync
from scripts.server_init.app_spec import Credentials
from scripts.server_init.config import ENVIRONMENTS


InputFn = Callable[[str], str]


def prompt_text(label: str, *, default: str = "", secret: bool = False, input_fn: InputFn = input) -> str:
    suffix = f" [default: {default}]" if default else ""
    reader = getpass.getpass if secret else input_fn
    value = str(reader(f"{label}{suffix}: ") or "").strip()
    return value or default


def prompt_environment(*, default: str = "prod", input_fn: InputFn = input) -> str:
    print("Environment options:")
    for index, name in enumerate(ENVIRONMENTS, start=1):
        print(f"  {index}) {name}")
    choice = str(input_fn(f"Select environment [1-{len(ENVIRONMENTS)}, default: {default}]: ") or "").strip()
    if choice.isdigit() and 1 <= int(choice) <= len(ENVIRONMENTS):
        return ENVIRONMENTS[int(choice) - 1]
    return default


def prompt_credentials(repo_url: str, *, input_fn: InputFn = input) -> Credentials:
    """Ask for credentials only when the repository refuses anonymous access."""
    if git_sync.ls_remote_heads(repo_url):
        return Credentials()

    print("Repository appears to be private or requires authentication.")
    print("Choose authentication method:")
    print("  1) Personal Access Token (Recommended)")
    print("  2) Username and Password")
    print("  3) Skip (will try without credentials)")
    choice = str(input_fn("Enter choice [1-3]: ") or "").strip()
    if choice == "1":
        return Credentials(token=prompt_text("Personal Access Token", secret=True, input_fn=input_fn))
    if choice == "2":
        username = prompt_text("Git Username", input_fn=input_fn)
        password = prompt_text("Git Password", secret=True, input_fn=input_fn)
        return Credentials(username=username, password=password)
    return Credentials()


def prompt_overrides(*, input_fn: InputFn = input) -> list[str]:
    print("You can override variables from .env.example. Type 'done' or press Enter to finish.")
    out: list[str] = []
    while True:
        entry = str(input_fn("Environment variable (KEY=VALUE or 'done' to finish): ") or "").strip()
        if not entry or entry == "done":
            return out
        if "=" not in entry:
            print("Invalid format. Use KEY=VALUE")
            continue
        out.append(entry)


def confirm(question: str, *, input_fn: InputFn = input) -> bool:
    answer = str(input_fn(f"{question} [Y/n]: ") or "").strip().lower()
    return answer not in {"n", "no"}
