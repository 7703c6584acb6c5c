"""Persist the current implementation plan of a repository.

The plan lives in ``.plan_runner/plan.yaml``; reads and writes take an
exclusive file lock so concurrent processes never observe a half-written plan.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import PLAN_FILE, PLAN_LOCK_FILE, STATE_DIR_NAME
from .errors import PlanNotFoundError
from .fsm import set_plan_status
from .io_utils import FileLock, load_state, save_state
from .models import ImplementationPlan, PlanStatus


class PlanStore:
    def __init__(self, repository_path: str | Path) -> None:
        self.repository_path = Path(repository_path)
        self.state_dir = self.repository_path / STATE_DIR_NAME
        self.path = self.state_dir / PLAN_FILE
        self._lock_path = self.state_dir / PLAN_LOCK_FILE

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ImplementationPlan]:
        """Load the current plan, or None when none was saved.

        Raises:
            ValueError: If the plan file exists but cannot be parsed.
        """
        with FileLock(self._lock_path):
            data, err = load_state(self.path)
        if err:
            raise ValueError(f"Unable to load plan: {err}")
        if not data:
            return None
        return ImplementationPlan.from_dict(data)

    def require(self) -> ImplementationPlan:
        plan = self.load()
        if plan is None:
            raise PlanNotFoundError(str(self.path))
        return plan

    def save(self, plan: ImplementationPlan) -> Path:
        with FileLock(self._lock_path):
            save_state(self.path, plan.to_dict())
        logger.debug("Saved plan {} to {}", plan.id, self.path)
        return self.path

    def update_status(
        self,
        plan: ImplementationPlan,
        status: PlanStatus,
        reason: Optional[str] = None,
    ) -> ImplementationPlan:
        set_plan_status(plan, status, reason)
        self.save(plan)
        return plan

    def delete(self) -> bool:
        with FileLock(self._lock_path):
            if not self.path.exists():
                return False
            self.path.unlink()
        return True
