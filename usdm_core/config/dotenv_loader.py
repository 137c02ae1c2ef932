"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Must not import `usdm_core.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def is_prod_env() -> bool:
    return (os.getenv("ENVIRONMENT") or "dev").strip().lower() == "prod"


def load_dotenv_files(*, root: Path | None = None) -> list[Path]:
    """
    Load dotenv files for local/testnet usage. No-op in prod.

    Returns:
        The files that were loaded
    """
    if is_prod_env():
        return []

    root = root or Path.cwd()
    loaded = []
    for name, override in ((".env", False), (".env.local", True)):
        path = root / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
