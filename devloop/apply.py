"""Applying edit-sets to the workspace.

Each FileEdit is applied independently: a missing patch target or a failed
write is recorded against that file and the rest of the edit-set still goes
through. Files that were written are syntax-checked afterwards; a file that
fails its check is reverted through version control.
"""

import json
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from devloop.errors import ApplyError, SyntaxValidationError
from devloop.models import EditSet, FileEdit, Task

logger = logging.getLogger(__name__)

ANALYSIS_TITLE_PREFIXES = ("analyze", "analyse", "investigate", "review", "audit")
SOURCE_SUFFIXES = {
    ".py", ".js", ".ts", ".tsx", ".jsx", ".json", ".yaml", ".yml", ".toml",
    ".php", ".module", ".inc", ".md", ".html", ".css", ".scss", ".sql",
    ".go", ".rs", ".java", ".rb", ".sh", ".cfg", ".ini", ".twig",
}

# Path-like tokens: at least one slash or a file extension
_PATH_RE = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w-]+\.[A-Za-z][A-Za-z0-9]{0,7})(?![\w/])")


@dataclass
class FileOutcome:
    """What happened to one FileEdit."""

    path: str
    operation: str
    applied: bool
    message: str | None = None
    reverted: bool = False


@dataclass
class ApplyReport:
    outcomes: list[FileOutcome] = field(default_factory=list)

    @property
    def applied(self) -> list[str]:
        return [o.path for o in self.outcomes if o.applied and not o.reverted]

    @property
    def failed(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if not o.applied]

    @property
    def reverted(self) -> list[str]:
        return [o.path for o in self.outcomes if o.reverted]


class VersionControl(Protocol):
    def revert(self, path: Path) -> bool: ...


class GitVersionControl:
    """Reverts single files with git.

    Attributes:
        repo_path: Working tree root
    """

    def __init__(self, repo_path: Path) -> None:
        self.repo_path = repo_path

    def revert(self, path: Path) -> bool:
        """Restore a file to its committed content.

        A file git does not track is deleted instead.

        Returns:
            True if the file was restored or removed
        """
        relative = str(path.relative_to(self.repo_path))
        try:
            tracked = subprocess.run(
                ["git", "ls-files", "--error-unmatch", relative],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=30,
            )
            if tracked.returncode != 0:
                path.unlink(missing_ok=True)
                return True
            result = subprocess.run(
                ["git", "checkout", "--", relative],
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"git revert of {relative} failed: {e}")
            return False
        if result.returncode != 0:
            logger.error(f"git checkout of {relative} failed: {result.stderr.strip()}")
            return False
        return True


SyntaxCheck = Callable[[Path], None]


def check_json(path: Path) -> None:
    try:
        json.loads(path.read_text())
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SyntaxValidationError(str(path), str(e)) from e


def check_python(path: Path) -> None:
    try:
        compile(path.read_text(), str(path), "exec")
    except (SyntaxError, ValueError) as e:
        raise SyntaxValidationError(str(path), str(e)) from e


def check_php(path: Path) -> None:
    php = shutil.which("php")
    if php is None:
        return
    try:
        result = subprocess.run(
            [php, "-l", str(path)], capture_output=True, text=True, timeout=30
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"php -l timed out on {path}, skipping syntax check")
        return
    if result.returncode != 0:
        raise SyntaxValidationError(str(path), (result.stdout or result.stderr).strip())


DEFAULT_SYNTAX_CHECKS: dict[str, SyntaxCheck] = {
    ".json": check_json,
    ".py": check_python,
    ".php": check_php,
}


class EditApplier:
    """Applies edit-sets inside a workspace.

    Attributes:
        workspace: Root all edit paths are resolved against
        vcs: Version control used to revert files failing their syntax check
        syntax_checks: Checks keyed by file suffix
    """

    def __init__(
        self,
        workspace: Path,
        vcs: VersionControl | None = None,
        syntax_checks: dict[str, SyntaxCheck] | None = None,
    ) -> None:
        self.workspace = workspace.resolve()
        self.vcs = vcs if vcs is not None else GitVersionControl(self.workspace)
        self.syntax_checks = (
            DEFAULT_SYNTAX_CHECKS if syntax_checks is None else syntax_checks
        )

    def apply(self, edit_set: EditSet) -> ApplyReport:
        """Apply every file edit, then syntax-check what was written.

        Returns:
            ApplyReport with one outcome per FileEdit
        """
        report = ApplyReport()
        for edit in edit_set.files:
            try:
                message = self._apply_one(edit)
                outcome = FileOutcome(edit.path, edit.operation, applied=True, message=message)
            except ApplyError as e:
                logger.warning(f"Could not apply {edit.operation} to {e}")
                outcome = FileOutcome(edit.path, edit.operation, applied=False, message=e.reason)
            report.outcomes.append(outcome)

            if outcome.applied and edit.operation != "delete":
                self._validate(outcome)

        logger.info(
            f"Applied {len(report.applied)}/{len(edit_set.files)} file edits"
            + (f", reverted {len(report.reverted)}" if report.reverted else "")
        )
        return report

    def resolve(self, relative: str) -> Path:
        """Resolve a workspace-relative path.

        Raises:
            ApplyError: If the path escapes the workspace
        """
        target = (self.workspace / relative).resolve()
        if target != self.workspace and self.workspace not in target.parents:
            raise ApplyError(relative, "path escapes the workspace")
        return target

    def missing_targets(self, paths: list[str]) -> list[str]:
        """Return the paths that do not exist in the workspace."""
        missing = []
        for relative in paths:
            try:
                if not self.resolve(relative).exists():
                    missing.append(relative)
            except ApplyError:
                missing.append(relative)
        return missing

    def _apply_one(self, edit: FileEdit) -> str | None:
        target = self.resolve(edit.path)
        try:
            return self._write_edit(edit, target)
        except OSError as e:
            raise ApplyError(edit.path, f"{edit.operation} failed: {e}") from e
        except UnicodeDecodeError as e:
            raise ApplyError(edit.path, f"not a UTF-8 text file: {e}") from e

    def _write_edit(self, edit: FileEdit, target: Path) -> str | None:
        if edit.operation == "delete":
            if not target.exists():
                return "already absent"
            target.unlink()
            return None

        if edit.operation == "patch":
            if not target.exists():
                raise ApplyError(edit.path, "patch target does not exist")
            text = target.read_text()
            misses = []
            for patch in edit.patches:
                if patch.search not in text:
                    misses.append(patch.search[:60])
                    continue
                text = text.replace(patch.search, patch.replace, 1)
            if len(misses) == len(edit.patches):
                raise ApplyError(edit.path, "no patch search string found")
            target.write_text(text)
            if misses:
                logger.warning(f"{edit.path}: {len(misses)} patch(es) not found: {misses}")
                return f"{len(misses)} patch(es) not found"
            return None

        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(edit.content or "")
        return None

    def _validate(self, outcome: FileOutcome) -> None:
        target = self.resolve(outcome.path)
        check = self.syntax_checks.get(target.suffix.lower())
        if check is None or not target.exists():
            return
        try:
            check(target)
        except SyntaxValidationError as e:
            logger.warning(str(e))
            outcome.message = e.details
            outcome.reverted = self.vcs.revert(target)


def is_analysis_task(task: Task) -> bool:
    if task.task_type == "analysis":
        return True
    return task.title.strip().lower().startswith(ANALYSIS_TITLE_PREFIXES)


def referenced_paths(task: Task) -> list[str]:
    """Collect file paths mentioned in a task's title, description and details."""
    text = "\n".join(filter(None, [task.title, task.description, task.details]))
    found: list[str] = []
    for match in _PATH_RE.findall(text):
        suffix = Path(match).suffix.lower()
        if "/" not in match and suffix not in SOURCE_SUFFIXES:
            continue
        if match not in found:
            found.append(match)
    return found
