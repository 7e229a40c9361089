"""
Migration script files on disk.

Migrations live as ``{id}_{Name}.sql`` files in a migrations directory,
where ``id`` is a 14-digit UTC timestamp. This module discovers them,
renders new ones and splits script bodies into executable statements.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from dbmigrator.core.exceptions import DuplicateMigrationError, ValidationError

from .base import MigrationInfo
from .config import ProviderType

MIGRATION_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
SCRIPT_FILE_PATTERN = re.compile(r"^(?P<id>\d{14})_(?P<name>[A-Za-z_][A-Za-z0-9_]*)\.sql$")
_BATCH_SEPARATOR = re.compile(r"^\s*GO\s*(?:--.*)?$", re.IGNORECASE | re.MULTILINE)


@dataclass(frozen=True)
class MigrationScript:
    """A migration script file found on disk."""
    id: str
    name: str
    path: Path

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def to_info(self) -> MigrationInfo:
        return MigrationInfo(id=self.id, name=self.name, script=self.path)


def validate_migration_name(name: str) -> str:
    if not name or not MIGRATION_NAME_PATTERN.match(name):
        raise ValidationError(
            f"Invalid migration name '{name}': use letters, digits and underscores, "
            "starting with a letter or underscore",
            failed_checks=["migration_name"],
        )
    return name


def script_filename(migration_id: str, name: str) -> str:
    return f"{migration_id}_{name}.sql"


def scan_scripts(directory: Union[str, Path]) -> List[MigrationScript]:
    """All well-named script files in ``directory`` sorted by id, duplicates included."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    scripts = []
    for path in directory.iterdir():
        match = SCRIPT_FILE_PATTERN.match(path.name)
        if match and path.is_file():
            scripts.append(MigrationScript(id=match.group("id"), name=match.group("name"), path=path))
    return sorted(scripts, key=lambda s: (s.id, s.name))


def discover_scripts(directory: Union[str, Path]) -> List[MigrationScript]:
    """Like ``scan_scripts`` but rejects two files sharing one id."""
    scripts = scan_scripts(directory)
    seen: Dict[str, MigrationScript] = {}
    for script in scripts:
        if script.id in seen:
            raise DuplicateMigrationError(
                script.id,
                f"Migration id {script.id} is used by both {seen[script.id].path.name} and {script.path.name}",
            )
        seen[script.id] = script
    return scripts


def render_template(name: str, provider: ProviderType, created: datetime) -> str:
    """Initial contents of a newly created migration file."""
    return (
        f"-- Migration: {name}\n"
        f"-- Created: {created.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        f"-- Provider: {provider.value}\n"
        "\n"
        "-- Write your SQL here\n"
    )


def render_placeholder(name: str, created: datetime) -> str:
    """Contents written when a plugin reports a script it did not produce."""
    return (
        f"-- Migration: {name}\n"
        f"-- Created: {created.strftime('%Y-%m-%d %H:%M:%S')} UTC\n"
        "\n"
        "-- Write your SQL here\n"
    )


def split_statements(script: str, provider: Optional[ProviderType] = None) -> List[str]:
    """
    Split a script into individual statements.

    Statements end at semicolons outside quotes and comments. SQL Server
    scripts are first cut into batches at ``GO`` lines, and each batch is
    executed whole. Comment-only fragments are dropped.
    """
    if provider == ProviderType.SQLSERVER:
        batches = _BATCH_SEPARATOR.split(script)
        return [b.strip() for b in batches if _has_code(b)]

    statements: List[str] = []
    current: List[str] = []
    i = 0
    length = len(script)
    quote: Optional[str] = None

    while i < length:
        ch = script[i]
        nxt = script[i + 1] if i + 1 < length else ""

        if quote:
            current.append(ch)
            if ch == quote:
                if nxt == quote:
                    current.append(nxt)
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == "-" and nxt == "-":
            end = script.find("\n", i)
            end = length if end == -1 else end
            current.append(script[i:end])
            i = end
            continue
        elif ch == "/" and nxt == "*":
            end = script.find("*/", i + 2)
            end = length if end == -1 else end + 2
            current.append(script[i:end])
            i = end
            continue
        elif ch == ";":
            statement = "".join(current).strip()
            if _has_code(statement):
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if _has_code(tail):
        statements.append(tail)
    return statements


def _has_code(fragment: str) -> bool:
    without_block = re.sub(r"/\*.*?\*/", "", fragment, flags=re.DOTALL)
    without_line = re.sub(r"--[^\n]*", "", without_block)
    return bool(without_line.strip())
