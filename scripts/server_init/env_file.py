"""Materialize an application's ``.env`` from its template plus overrides."""
from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values


LOG_PREFIX = "[ENV-FILE]"
ENV_FILE_NAME = ".env"
TEMPLATE_FILE_NAME = ".env.example"
ENVIRONMENT_KEY = "ENV"

logger = logging.getLogger(__name__)


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(r"^" + re.escape(key) + r"=")


def apply_overrides(lines: list[str], overrides: Mapping[str, str]) -> list[str]:
    """Replace the first ``KEY=`` line per override, append the rest."""
    out = list(lines)
    for key, value in overrides.items():
        pattern = _key_pattern(key)
        for index, line in enumerate(out):
            if pattern.match(line):
                out[index] = f"{key}={value}"
                logger.info("%s  Updated: %s", LOG_PREFIX, key)
                break
        else:
            out.append(f"{key}={value}")
            logger.info("%s  Added: %s", LOG_PREFIX, key)
    return out


def ensure_environment_key(lines: list[str], environment: str) -> list[str]:
    pattern = _key_pattern(ENVIRONMENT_KEY)
    if any(pattern.match(line) for line in lines):
        return list(lines)
    return [*lines, f"{ENVIRONMENT_KEY}={environment}"]


def materialize_env_file(
    app_dir: Path,
    overrides: Mapping[str, str],
    environment: str,
    *,
    template_name: str = TEMPLATE_FILE_NAME,
) -> Path:
    """Write ``<app_dir>/.env`` and return its path.

    An existing ``.env`` is patched in place; otherwise the template is copied
    verbatim, or an empty file is started.  Running this again with the same
    overrides changes nothing.
    """
    env_path = app_dir / ENV_FILE_NAME
    template_path = app_dir / template_name

    if env_path.exists():
        logger.info("%s Patching existing %s", LOG_PREFIX, env_path)
    elif template_path.exists():
        shutil.copyfile(template_path, env_path)
        logger.info("%s Copied %s to %s", LOG_PREFIX, template_name, ENV_FILE_NAME)
    else:
        logger.warning("%s No %s found, creating empty %s", LOG_PREFIX, template_name, ENV_FILE_NAME)
        env_path.write_text("", encoding="utf-8")

    lines = env_path.read_text(encoding="utf-8").splitlines()
    lines = apply_overrides(lines, overrides)
    lines = ensure_environment_key(lines, environment)
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return env_path


def read_env_keys(env_path: Path) -> dict[str, str]:
    raw = dotenv_values(env_path)
    return {str(k): str(v or "") for k, v in raw.items()}
