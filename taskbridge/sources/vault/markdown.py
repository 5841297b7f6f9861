"""Markdown vault adapter for task synchronization.

Reads task lines out of every ``*.md`` file under a folder (an Obsidian vault,
a Syncthing/NextCloud folder, ...) and rewrites single lines in place.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os

from taskbridge.core.errors import NoteStoreError
from taskbridge.core.models import Task
from taskbridge.sources.vault.parser import parse_task_line

logger = logging.getLogger(__name__)


class MarkdownVault:
    """
    Note store backed by a folder of markdown files.

    Hidden folders (``.obsidian``, ``.trash``, ``.git``) are skipped. Line
    rewrites are serialized so two tasks in the same file never race on a
    read-modify-write of that file.
    """

    def __init__(self, base_path: Path):
        """
        Initialize the vault adapter.

        Args:
            base_path: Root folder of the vault
        """
        self.base_path = Path(base_path).expanduser().resolve()
        self._write_lock = asyncio.Lock()

    def list_files(self) -> list[Path]:
        """List all markdown files in the vault, sorted by path."""
        if not self.base_path.exists():
            logger.warning(f"Vault folder does not exist: {self.base_path}")
            return []

        files = [
            path
            for path in self.base_path.rglob("*.md")
            if path.is_file()
            and not any(part.startswith(".") for part in path.relative_to(self.base_path).parts)
        ]
        files.sort()
        logger.debug(f"Found {len(files)} markdown files in {self.base_path}")
        return files

    def relative_path(self, file_path: Path) -> str:
        return file_path.relative_to(self.base_path).as_posix()

    async def read_tasks(self, file_path: Path) -> list[Task]:
        """
        Read every task line of one markdown file.

        Raises:
            NoteStoreError: If the file cannot be read
        """
        try:
            async with aiofiles.open(file_path, "r", encoding="utf-8", newline="") as f:
                content = await f.read()
            stat = await aiofiles.os.stat(file_path)
        except (OSError, UnicodeDecodeError) as e:
            raise NoteStoreError(f"Failed to read {file_path}: {e}") from e

        modified_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        relative = self.relative_path(file_path)

        tasks = []
        for number, line in enumerate(content.splitlines(keepends=True), start=1):
            task = parse_task_line(line, relative, number, modified_at)
            if task:
                tasks.append(task)
        return tasks

    async def list_tasks(self) -> list[Task]:
        """Read the tasks of every markdown file in the vault."""
        tasks: list[Task] = []
        for file_path in self.list_files():
            try:
                tasks.extend(await self.read_tasks(file_path))
            except NoteStoreError as e:
                logger.error(str(e))
        logger.info(f"Found {len(tasks)} tasks in vault {self.base_path}")
        return tasks

    async def rewrite_task_line(self, task: Task, new_raw_text: str) -> None:
        """
        Replace ``task``'s line with ``new_raw_text``.

        The stored line must still match ``task.raw_text``. If the line moved
        (lines inserted above it) it is located by content. The original line
        terminator is kept. On success ``task.raw_text`` and
        ``task.line_number`` are updated.

        Raises:
            NoteStoreError: If the file is missing or the line changed since it was read
        """
        file_path = self.base_path / task.file_path
        expected = task.raw_text.rstrip("\r\n")
        replacement = new_raw_text.rstrip("\r\n")

        async with self._write_lock:
            try:
                async with aiofiles.open(file_path, "r", encoding="utf-8", newline="") as f:
                    lines = (await f.read()).splitlines(keepends=True)
            except OSError as e:
                raise NoteStoreError(f"Failed to read {task.file_path}: {e}") from e

            index = task.line_number - 1
            if not (0 <= index < len(lines) and lines[index].rstrip("\r\n") == expected):
                matches = [i for i, line in enumerate(lines) if line.rstrip("\r\n") == expected]
                if len(matches) != 1:
                    raise NoteStoreError(
                        f"Task line changed since it was read: {task.location}"
                    )
                index = matches[0]

            old = lines[index]
            terminator = old[len(old.rstrip("\r\n")):]
            lines[index] = replacement + terminator

            try:
                async with aiofiles.open(file_path, "w", encoding="utf-8", newline="") as f:
                    await f.write("".join(lines))
            except OSError as e:
                raise NoteStoreError(f"Failed to write {task.file_path}: {e}") from e

        logger.debug(f"Rewrote task line {task.file_path}:{index + 1}")
        task.raw_text = replacement + terminator
        task.line_number = index + 1
