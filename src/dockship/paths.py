"""Unified path constants for dockship.

All local state is stored under the .dockship directory:
- .dockship/ledger.jsonl       # append-only deployment ledger
- .dockship/ledger.jsonl.lock  # held while a deploy is being registered
"""

from pathlib import Path

# 基础目录（在当前工作目录下）
BASE_DIR = Path(".dockship")

LEDGER_FILE = BASE_DIR / "ledger.jsonl"


def lock_path_for(ledger_path: Path) -> Path:
    """Lock file guarding check-and-append on `ledger_path`."""
    return ledger_path.with_name(ledger_path.name + ".lock")
