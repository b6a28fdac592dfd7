from __future__ import annotations

import hashlib
import logging
import re
import secrets
import subprocess
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from governor.errors import CheckpointError, GovernorError, RollbackFailureError
from governor.models import Checkpoint
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.checkpoints")

COMMIT_PREFIX = "governor-checkpoint"


@dataclass(slots=True)
class RollbackResult:
    checkpoint_id: str
    git_ref: str
    previous_head: str
    quarantine_path: str | None


class CheckpointManager:
    """Reversible git snapshots taken before risky work.

    Records live as one JSON file per checkpoint. Pruning removes records
    only; commits stay in git history.
    """

    def __init__(
        self,
        store: ProjectStore,
        *,
        worktrees_dir: str = ".governor/worktrees",
    ) -> None:
        self.store = store
        self.repo_root = store.repo_root
        self.worktrees_dir = worktrees_dir

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            errors="replace",
            capture_output=True,
            input=input_text,
        )
        if check and proc.returncode != 0:
            raise CheckpointError(
                f"git {' '.join(args[:2])} failed: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        return proc

    def validate_environment(self) -> None:
        proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        if proc.returncode != 0 or proc.stdout.strip() != "true":
            raise CheckpointError(f"{self.repo_root} is not inside a git work tree.")
        (self.repo_root / self.worktrees_dir).mkdir(parents=True, exist_ok=True)
        ignored = self._run_git(["check-ignore", "-q", self.worktrees_dir], check=False)
        if ignored.returncode != 0:
            raise CheckpointError(
                f"Scratch directory '{self.worktrees_dir}' is not git-ignored; "
                "add it to .gitignore before running checkpointed work."
            )

    def _head(self) -> str:
        proc = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if proc.returncode != 0:
            raise CheckpointError("Repository has no commits; a checkpoint needs a base revision.")
        return proc.stdout.strip()

    def _stageable(self, files: list[str]) -> list[str]:
        if not files:
            return []
        tracked = set(
            self._run_git(["ls-files", "--", *files], check=True).stdout.splitlines()
        )
        stageable: list[str] = []
        for path in dict.fromkeys(files):
            if (self.repo_root / path).exists() or path in tracked:
                stageable.append(path)
            else:
                logger.debug("Skipping declared file %s: not on disk and untracked", path)
        return stageable

    def _snapshot(self) -> dict[str, str]:
        digests: dict[str, str] = {}
        for path in self.store.coordination_files():
            if path.exists():
                digests[self.store.relative(path)] = hashlib.sha256(path.read_bytes()).hexdigest()
        return digests

    @staticmethod
    def _new_id(task_id: str, created: datetime) -> str:
        label = re.sub(r"[^a-zA-Z0-9_-]+", "-", task_id)[:8] or "task"
        return f"cp-{created.strftime('%Y%m%d%H%M%S%f')}-{secrets.token_hex(2)}-{label}"

    def _record_path(self, checkpoint_id: str) -> Path:
        return self.store.checkpoints_dir / f"{checkpoint_id}.json"

    def create(self, task_id: str, description: str, files_to_stage: list[str]) -> Checkpoint:
        self.validate_environment()
        head = self._head()
        message = f"{COMMIT_PREFIX}: {description}"
        staged = self._stageable(files_to_stage)

        if staged:
            self._run_git(["add", "--", *staged], check=True)
            self._run_git(["commit", "--allow-empty", "--no-verify", "-m", message, "--", *staged])
            git_ref = self._run_git(["rev-parse", "HEAD"], check=True).stdout.strip()
        else:
            # Commit the current HEAD tree so unrelated staged work stays staged.
            tree = self._run_git(["rev-parse", "HEAD^{tree}"], check=True).stdout.strip()
            git_ref = self._run_git(
                ["commit-tree", tree, "-p", head], input_text=message + "\n"
            ).stdout.strip()
            self._run_git(["update-ref", "-m", message, "HEAD", git_ref, head], check=True)

        created = datetime.now(UTC)
        checkpoint = Checkpoint(
            id=self._new_id(task_id, created),
            task_id=task_id,
            created_at=created.isoformat(),
            git_ref=git_ref,
            description=description,
            files=tuple(staged),
            state_snapshot=self._snapshot(),
        )
        self.store.write_json(self._record_path(checkpoint.id), checkpoint.to_dict())
        logger.info("Checkpoint %s created at %s for %s", checkpoint.id, git_ref[:10], task_id)
        return checkpoint

    def list_checkpoints(self) -> list[Checkpoint]:
        directory = self.store.checkpoints_dir
        if not directory.exists():
            return []
        checkpoints: list[Checkpoint] = []
        for path in directory.glob("cp-*.json"):
            payload = self.store.read_json(path, default=None)
            if isinstance(payload, dict):
                checkpoints.append(Checkpoint.from_dict(payload))
        return sorted(checkpoints, key=lambda item: (item.created_at, item.id))

    def get(self, checkpoint_id: str) -> Checkpoint:
        path = self._record_path(checkpoint_id)
        payload = self.store.read_json(path, default=None)
        if not isinstance(payload, dict):
            raise CheckpointError(f"Checkpoint not found: {checkpoint_id}")
        return Checkpoint.from_dict(payload)

    def latest_for_task(self, task_id: str) -> Checkpoint | None:
        matches = [
            checkpoint
            for checkpoint in self.list_checkpoints()
            if task_id in checkpoint.task_id.split(",")
        ]
        return matches[-1] if matches else None

    def _diff_bytes(self, git_ref: str) -> bytes:
        # Raw bytes: tracked files need not be UTF-8.
        proc = subprocess.run(
            ["git", "--no-pager", "diff", "--binary", git_ref],
            cwd=self.repo_root,
            capture_output=True,
        )
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise CheckpointError(f"git diff failed: {stderr}")
        return proc.stdout

    def _quarantine(self, checkpoint: Checkpoint, previous_head: str) -> str | None:
        diff = self._diff_bytes(checkpoint.git_ref)
        if not diff.strip():
            return None
        stamp = datetime.now(UTC).strftime("%Y%m%d%H%M%S%f")
        target = self.store.quarantine_dir / f"pre-rollback-{checkpoint.id}-{stamp}.patch"
        header = (
            f"# checkpoint: {checkpoint.id}\n"
            f"# restored-ref: {checkpoint.git_ref}\n"
            f"# previous-head: {previous_head}\n"
        )
        self.store.write_bytes(target, header.encode("utf-8") + diff)
        return str(target)

    def rollback(self, checkpoint_id: str) -> RollbackResult:
        checkpoint = self.get(checkpoint_id)
        quarantine_path: str | None = None
        try:
            self.validate_environment()
            previous_head = self._head()
            quarantine_path = self._quarantine(checkpoint, previous_head)
        except (GovernorError, OSError) as exc:
            raise RollbackFailureError(
                f"Could not quarantine changes before rollback: {exc}",
                checkpoint_id=checkpoint_id,
                quarantine_path=quarantine_path,
            ) from exc

        proc = self._run_git(["reset", "--hard", checkpoint.git_ref], check=False)
        if proc.returncode != 0:
            raise RollbackFailureError(
                f"git reset to {checkpoint.git_ref[:10]} failed: {proc.stderr.strip()}",
                checkpoint_id=checkpoint_id,
                quarantine_path=quarantine_path,
            )
        logger.warning(
            "Rolled back to checkpoint %s (%s); quarantine: %s",
            checkpoint_id,
            checkpoint.git_ref[:10],
            quarantine_path or "none",
        )
        return RollbackResult(
            checkpoint_id=checkpoint_id,
            git_ref=checkpoint.git_ref,
            previous_head=previous_head,
            quarantine_path=quarantine_path,
        )

    def prune(self, max_retained: int = 10) -> list[str]:
        checkpoints = self.list_checkpoints()
        excess = len(checkpoints) - max(0, max_retained)
        if excess <= 0:
            return []
        removed: list[str] = []
        for checkpoint in checkpoints[:excess]:
            self._record_path(checkpoint.id).unlink(missing_ok=True)
            removed.append(checkpoint.id)
        logger.info("Pruned %d checkpoint record(s)", len(removed))
        return removed
