"""Persisted login sessions, one storage state per (site, identity)."""
from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..models import SessionState

LOGGER = logging.getLogger(__name__)


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9_.-]+", "_", value.strip().lower()) or "default"


class SessionStore:
    """File-backed store of browser storage states."""

    def __init__(self, storage_dir: Path | str, *, max_age_seconds: float = 4 * 3600) -> None:
        """Initialize the store.

        Parameters
        ----------
        storage_dir : Path | str
            Root directory; states live in ``<root>/<site>/<identity>.json``
        max_age_seconds : float
            Age after which a saved state is no longer trusted (default: 4 hours)
        """
        self.storage_dir = Path(storage_dir)
        self.max_age_seconds = max_age_seconds

    def path_for(self, site_id: str, identity: str) -> Path:
        return self.storage_dir / _slug(site_id) / f"{_slug(identity)}.json"

    def _read(self, path: Path) -> Optional[SessionState]:
        try:
            return SessionState.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as exc:
            LOGGER.warning("Discarding unreadable session state %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None

    def load(self, site_id: str, identity: str, *, now: Optional[float] = None) -> Optional[SessionState]:
        """Return the trusted state for the identity, deleting stale ones.

        Returns
        -------
        SessionState or None
            ``None`` if no state exists, it is older than ``max_age`` or it
            was saved for a different identity
        """
        path = self.path_for(site_id, identity)
        state = self._read(path)
        if state is None:
            return None
        if state.owner_identity != identity:
            LOGGER.warning(
                "Session state %s belongs to %s, not %s; deleting",
                path.name,
                state.owner_identity,
                identity,
            )
            self.delete(site_id, identity)
            return None
        if not state.is_fresh(now):
            LOGGER.info(
                "Session state for %s/%s expired (age=%.0fs, max=%.0fs)",
                site_id,
                identity,
                state.age(now),
                state.max_age,
            )
            self.delete(site_id, identity)
            return None
        return state

    def save(self, site_id: str, identity: str, storage_state: Dict[str, Any]) -> SessionState:
        """Persist a storage state atomically and return its record."""
        state = SessionState(
            site_id=site_id,
            owner_identity=identity,
            storage_state=storage_state,
            saved_at=time.time(),
            max_age=self.max_age_seconds,
        )
        path = self.path_for(site_id, identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(state.model_dump_json(), encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.info(
            "Saved session state for %s/%s (%d cookies)",
            site_id,
            identity,
            len(storage_state.get("cookies", [])),
        )
        return state

    def delete(self, site_id: str, identity: str) -> bool:
        path = self.path_for(site_id, identity)
        if path.exists():
            path.unlink()
            LOGGER.info("Deleted session state %s", path)
            return True
        return False

    def list_states(self) -> List[SessionState]:
        states = []
        for path in sorted(self.storage_dir.glob("*/*.json")):
            state = self._read(path)
            if state is not None:
                states.append(state)
        return states

    def cleanup_expired(self, *, now: Optional[float] = None) -> int:
        """Remove every state older than its ``max_age``.

        Returns
        -------
        int
            Number of states removed
        """
        removed = 0
        for state in self.list_states():
            if not state.is_fresh(now):
                self.delete(state.site_id, state.owner_identity)
                removed += 1
        if removed:
            LOGGER.info("Cleaned up %d expired session state(s)", removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        states = self.list_states()
        fresh = [s for s in states if s.is_fresh()]
        return {
            "total_states": len(states),
            "fresh_states": len(fresh),
            "sites": sorted({s.site_id for s in states}),
        }
