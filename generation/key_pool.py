"""
API key pool: round-robin credential rotation with health tracking.

Each key is either active or deactivated. A key is deactivated after
MAX_CONSECUTIVE_ERRORS failures in a row; a success zeroes its counter.
When every key is deactivated at once the whole pool is reset so a long
batch job can never lock itself out.

The pool is an explicit object owned by whoever drives generation; there is
no module-level key state. Selection and health updates never await, so a
single event loop needs no lock around them.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from generation.errors import ConfigurationError, NoApiKeysError

log = logging.getLogger("generation.pipeline")

MAX_CONSECUTIVE_ERRORS = 3
MAX_KEYS = 100

GEMINI_KEY_PATTERN = r"AIzaSy[a-zA-Z0-9_-]+"


@dataclass
class ApiKeyState:
    key: str
    usage_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_used_at: Optional[float] = None
    is_active: bool = True


@dataclass
class KeyLease:
    """
    A key handed out by the pool.

    Health updates are addressed by the lease, so a request still in flight
    when the pool is reconfigured cannot touch a key from the new set.
    """
    key: str
    index: int
    generation: int = 0


class ApiKeyPool:
    def __init__(self, keys: Optional[Iterable[str]] = None):
        self._states: List[ApiKeyState] = []
        self._cursor = 0
        self._generation = 0
        if keys is not None:
            self.configure(keys)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def configure(self, keys: Iterable[str]) -> int:
        """
        Replace the pool with the given keys.

        Blank entries are discarded after trimming. Raises ConfigurationError
        (and leaves the current pool untouched) if nothing usable remains.
        """
        valid = [k.strip() for k in keys if k and k.strip()]
        if not valid:
            log.error("[KEYS] No valid API keys provided")
            raise ConfigurationError("No valid API keys provided")

        self._states = [ApiKeyState(key=k) for k in valid]
        self._cursor = 0
        self._generation += 1
        log.info(f"[KEYS] {len(self._states)} API key(s) configured")
        return len(self._states)

    def reset(self) -> None:
        """Reactivate every key and clear its consecutive-error count."""
        for state in self._states:
            state.is_active = True
            state.error_count = 0

    # ── Selection ─────────────────────────────────────────────────────────────

    @property
    def size(self) -> int:
        return len(self._states)

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._states if s.is_active)

    def next_key(self) -> KeyLease:
        """
        Return the next active key, scanning forward from the cursor.

        Raises NoApiKeysError only when the pool is empty.
        """
        if not self._states:
            log.error("[KEYS] No API keys configured")
            raise NoApiKeysError("No API keys configured. Please add API keys first.")

        lease = self._select()
        if lease is None:
            log.warning("[KEYS] All API keys marked as inactive, resetting...")
            self.reset()
            lease = self._select()
        return lease

    def _select(self) -> Optional[KeyLease]:
        total = len(self._states)
        for step in range(total):
            idx = (self._cursor + step) % total
            state = self._states[idx]
            if state.is_active:
                state.usage_count += 1
                state.last_used_at = time.time()
                self._cursor = (idx + 1) % total
                log.debug(f"[KEYS] Using API key {idx + 1}/{total} (used {state.usage_count} times)")
                return KeyLease(key=state.key, index=idx, generation=self._generation)
        return None

    # ── Health ────────────────────────────────────────────────────────────────

    def _leased_state(self, lease: KeyLease) -> Optional[ApiKeyState]:
        if lease.generation != self._generation:
            log.debug(f"[KEYS] Ignoring health update for key {lease.index + 1} from a replaced key set")
            return None
        if 0 <= lease.index < len(self._states):
            return self._states[lease.index]
        return None

    def record_success(self, lease: KeyLease) -> None:
        state = self._leased_state(lease)
        if state is not None:
            state.error_count = 0
            state.last_error = None

    def record_failure(self, lease: KeyLease, message: str) -> None:
        state = self._leased_state(lease)
        if state is None:
            return
        state.error_count += 1
        state.last_error = message
        if state.error_count >= MAX_CONSECUTIVE_ERRORS and state.is_active:
            state.is_active = False
            log.warning(
                f"[KEYS] API key {lease.index + 1} deactivated after "
                f"{state.error_count} consecutive errors"
            )

    def stats(self) -> List[Dict]:
        """Per-key usage/health summary. Never includes the key itself."""
        return [
            {
                "index": idx + 1,
                "usage_count": s.usage_count,
                "error_count": s.error_count,
                "last_error": s.last_error,
                "is_active": s.is_active,
                "last_used_at": s.last_used_at,
            }
            for idx, s in enumerate(self._states)
        ]


# ─── Bulk key parsing ──────────────────────────────────────────────────────────

def parse_api_keys(text: str, pattern: Optional[str] = None) -> List[str]:
    """
    Pull API keys out of pasted free text.

    With a pattern (e.g. GEMINI_KEY_PATTERN) every match is taken; without one
    the text is split on commas and whitespace. Keys are de-duplicated in
    order and capped at MAX_KEYS.
    """
    cleaned = re.sub(r"\s+", " ", text or "")
    cleaned = re.sub(r",+", ",", cleaned).strip()

    if pattern:
        candidates = re.findall(pattern, cleaned)
    else:
        candidates = re.split(r"[,\s]+", cleaned)

    keys = [c.strip().replace(",", "") for c in candidates]
    keys = [k for k in keys if k and " " not in k]
    return list(dict.fromkeys(keys[:MAX_KEYS]))
