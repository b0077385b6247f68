# planrunner/storage.py
"""
Plan persistence with a tiered backend strategy.

PlanStore keeps the working set in memory and writes it through to a
primary backend. If the primary fails, the fallback backend (capped
to the most recently updated plans) is used instead. Backend failures
are logged and never raised to callers; a plan that cannot be
serialized at all is rejected by save_plan with ValueError.

Structure of the default backends:
    store_dir/
        plans/
            <plan_id>.json      # DirectoryBackend (primary)
        index.json              # IndexFileBackend (fallback)
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .plan import Plan, StepCheckpoint

logger = logging.getLogger(__name__)

# Errors that mean "this backend is unusable right now"
BACKEND_ERRORS = (OSError, ValueError, TypeError, KeyError)

DEFAULT_MAX_FALLBACK_PLANS = 50


class StorageBackend(ABC):
    """Durable home for serialized plans."""

    @abstractmethod
    def load_all(self) -> List[Dict[str, Any]]:
        """Return every stored plan as a dict."""
        pass

    @abstractmethod
    def persist(self, plans: List[Dict[str, Any]]) -> None:
        """Write the given plans, replacing stored copies with the same ID."""
        pass

    def remove(self, plan_id: str) -> None:
        """Forget a deleted plan. Backends that rewrite everything on persist need nothing here."""
        pass


class DirectoryBackend(StorageBackend):
    """
    One JSON file per plan under a directory.

    persist() only writes; files are removed through remove(), so a
    file that could not be read is left on disk untouched.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _plan_path(self, plan_id: str) -> Path:
        return self.root / f"{plan_id}.json"

    def load_all(self) -> List[Dict[str, Any]]:
        if not self.root.exists():
            return []
        plans = []
        for path in sorted(self.root.glob("*.json")):
            try:
                with open(path) as f:
                    plans.append(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable plan file {path}: {e}")
        return plans

    def persist(self, plans: List[Dict[str, Any]]) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

        for data in plans:
            path = self._plan_path(data["id"])
            # Write to temp file, then atomic rename
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(data, f, indent=2)
            temp_path.replace(path)

    def remove(self, plan_id: str) -> None:
        self._plan_path(plan_id).unlink(missing_ok=True)


class IndexFileBackend(StorageBackend):
    """Single JSON index holding only the most recently updated plans."""

    def __init__(self, path: Path | str, max_plans: int = DEFAULT_MAX_FALLBACK_PLANS):
        self.path = Path(path)
        self.max_plans = max_plans

    def load_all(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            data = json.load(f)
        return list(data.get("plans", []))

    def persist(self, plans: List[Dict[str, Any]]) -> None:
        recent = sorted(plans, key=lambda p: p.get("updated_at") or 0, reverse=True)
        recent = recent[:self.max_plans]
        if len(plans) > len(recent):
            logger.debug(f"Index keeps {len(recent)} of {len(plans)} plans")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump({"version": "1.0", "plans": recent}, f, indent=2)
        temp_path.replace(self.path)


class MemoryBackend(StorageBackend):
    """Volatile backend; contents are lost with the process."""

    def __init__(self, plans: Optional[List[Dict[str, Any]]] = None, max_plans: Optional[int] = None):
        self.max_plans = max_plans
        self._plans: List[Dict[str, Any]] = json.loads(json.dumps(plans or []))

    def load_all(self) -> List[Dict[str, Any]]:
        return json.loads(json.dumps(self._plans))

    def persist(self, plans: List[Dict[str, Any]]) -> None:
        plans = sorted(plans, key=lambda p: p.get("updated_at") or 0, reverse=True)
        if self.max_plans is not None:
            plans = plans[:self.max_plans]
        self._plans = json.loads(json.dumps(plans))


class PlanStore:
    """
    Persistent storage for plans.

    The store holds snapshots: save_plan copies the plan, and load_plan
    returns a fresh copy, so later in-place changes by the executor are
    only visible after the next save.
    """

    def __init__(
        self,
        primary: Optional[StorageBackend] = None,
        fallback: Optional[StorageBackend] = None,
    ):
        """
        Initialize the store and load existing plans.

        Args:
            primary: Preferred backend (in-memory only when None)
            fallback: Backend used when the primary fails
        """
        self.primary = primary
        self.fallback = fallback or MemoryBackend(max_plans=DEFAULT_MAX_FALLBACK_PLANS)
        self.degraded = False
        self._plans: Dict[str, Plan] = {}
        self._load()

    @classmethod
    def open(cls, store_dir: Path | str, max_fallback_plans: int = DEFAULT_MAX_FALLBACK_PLANS) -> "PlanStore":
        """Create a store with the default on-disk layout under store_dir."""
        store_dir = Path(store_dir)
        return cls(
            primary=DirectoryBackend(store_dir / "plans"),
            fallback=IndexFileBackend(store_dir / "index.json", max_plans=max_fallback_plans),
        )

    def _load(self):
        """Load from the primary backend, falling back when it is empty or broken."""
        records: List[Dict[str, Any]] = []
        if self.primary is not None:
            try:
                records = self.primary.load_all()
            except BACKEND_ERRORS as e:
                logger.warning(f"Primary plan storage unavailable, trying fallback: {e}")

        if records:
            source = "primary"
        else:
            source = "fallback"
            try:
                records = self.fallback.load_all()
            except BACKEND_ERRORS as e:
                logger.error(f"Failed to load plans from fallback storage: {e}")
                records = []

        for data in records:
            try:
                plan = Plan.from_dict(data)
            except BACKEND_ERRORS as e:
                logger.warning(f"Skipping unreadable plan record: {e}")
                continue
            self._plans[plan.id] = plan

        if self._plans:
            logger.info(f"Loaded {len(self._plans)} plans from {source} storage")

    def _persist(self):
        """Write all plans through to storage, degrading to the fallback."""
        records = [p.to_dict() for p in self._plans.values()]

        if self.primary is not None:
            try:
                self.primary.persist(records)
                return
            except BACKEND_ERRORS as e:
                logger.warning(f"Primary plan storage failed, using fallback: {e}")
                self.degraded = True

        try:
            self.fallback.persist(records)
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to persist plans to fallback storage: {e}")

    def save_plan(self, plan: Plan) -> None:
        """
        Save a snapshot of the plan (bumps plan.updated_at).

        Raises:
            ValueError: If the plan cannot be serialized (e.g. metadata
                holding non-JSON values); nothing is stored in that case
        """
        try:
            snapshot = plan.copy()
        except (TypeError, ValueError) as e:
            raise ValueError(f"Plan {plan.id} is not serializable: {e}") from e

        plan.touch(max(time.time(), plan.updated_at or 0))
        snapshot.updated_at = plan.updated_at
        self._plans[plan.id] = snapshot
        self._persist()
        logger.debug(f"Saved plan {plan.id} ({plan.status.value})")

    def load_plan(self, plan_id: str) -> Optional[Plan]:
        """Load a copy of a plan, or None if unknown."""
        plan = self._plans.get(plan_id)
        return plan.copy() if plan is not None else None

    def list_plans(self) -> List[Plan]:
        """All plans, most recently updated first."""
        plans = sorted(self._plans.values(), key=lambda p: p.updated_at or 0, reverse=True)
        return [p.copy() for p in plans]

    def delete_plan(self, plan_id: str) -> bool:
        """Delete a plan. Returns False if it was not stored."""
        if plan_id not in self._plans:
            return False
        del self._plans[plan_id]
        for backend in (self.primary, self.fallback):
            if backend is None:
                continue
            try:
                backend.remove(plan_id)
            except BACKEND_ERRORS as e:
                logger.warning(f"Failed to remove plan {plan_id} from {type(backend).__name__}: {e}")
        self._persist()
        logger.info(f"Deleted plan {plan_id}")
        return True

    def save_checkpoint(self, plan_id: str, step_id: str, checkpoint: StepCheckpoint) -> None:
        """Attach a checkpoint to a stored step; unknown plans/steps are ignored."""
        plan = self._plans.get(plan_id)
        if plan is None:
            logger.debug(f"Checkpoint for unknown plan {plan_id} ignored")
            return
        step = plan.get_step(step_id)
        if step is None:
            logger.debug(f"Checkpoint for unknown step {step_id} in plan {plan_id} ignored")
            return
        step.checkpoint = StepCheckpoint.from_dict(checkpoint.to_dict())
        plan.touch(max(time.time(), plan.updated_at or 0))
        self._persist()

    def __contains__(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def __len__(self) -> int:
        return len(self._plans)
