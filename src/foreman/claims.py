from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from foreman.errors import AlreadyClaimedError, ValidationError
from foreman.liveness import ProcessLivenessChecker, default_liveness_checker
from foreman.state.store import JsonStateStore

logger = logging.getLogger(__name__)

CLAIMS_NAMESPACE = "claims"
CLAIMS_SCHEMA_VERSION = 1
DEFAULT_TTL_HOURS = 4.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class Claim:
    item_id: str
    session_id: str
    pid: int | None
    claimed_at: str
    expires_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Claim:
        return cls(
            item_id=str(data["item_id"]),
            session_id=str(data["session_id"]),
            pid=data.get("pid"),
            claimed_at=str(data.get("claimed_at", "")),
            expires_at=str(data.get("expires_at", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "session_id": self.session_id,
            "pid": self.pid,
            "claimed_at": self.claimed_at,
            "expires_at": self.expires_at,
        }


def _migrate_claim_list(data: Any) -> dict[str, Any]:
    # Early files stored claims as a bare list.
    if isinstance(data, list):
        return {
            "claims": {
                str(item["item_id"]): item
                for item in data
                if isinstance(item, dict) and item.get("item_id")
            }
        }
    if isinstance(data, dict):
        return {"claims": dict(data.get("claims") or {})}
    return {"claims": {}}


class ClaimManager:
    """Exclusive, expiring claims on work items shared by every session."""

    def __init__(
        self,
        store: JsonStateStore,
        *,
        liveness: ProcessLivenessChecker | None = None,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.liveness = liveness or default_liveness_checker()
        self.ttl_hours = ttl_hours
        self.clock = clock or _utcnow
        self.store.register(CLAIMS_NAMESPACE, CLAIMS_SCHEMA_VERSION, migrations={0: _migrate_claim_list})

    @staticmethod
    def _default() -> dict[str, Any]:
        return {"claims": {}}

    def is_live(self, claim: Claim, now: datetime | None = None) -> bool:
        moment = now or self.clock()
        try:
            expires = datetime.fromisoformat(claim.expires_at)
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)
        if moment >= expires:
            return False
        return self.liveness.is_alive(claim.pid)

    def _live_claims(self) -> list[Claim]:
        now = self.clock()
        data = self.store.get(CLAIMS_NAMESPACE, default=self._default())
        claims = [Claim.from_dict(record) for record in data.get("claims", {}).values()]
        return sorted(
            (claim for claim in claims if self.is_live(claim, now)),
            key=lambda claim: claim.claimed_at,
        )

    def claim(
        self,
        item_id: str,
        session_id: str,
        pid: int | None,
        *,
        ttl_hours: float | None = None,
    ) -> Claim:
        """Take ``item_id`` for ``session_id``.

        Stale claims on the item are purged in the same locked update that
        writes the new one, so two concurrent callers can never both succeed.
        Re-claiming an item the session already holds refreshes its expiry.
        """
        if not item_id.strip():
            raise ValidationError("Item id must not be empty.")
        ttl = timedelta(hours=self.ttl_hours if ttl_hours is None else ttl_hours)
        result: dict[str, Claim] = {}

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            claims = payload.setdefault("claims", {})
            now = self.clock()
            existing = claims.get(item_id)
            if existing is not None:
                current = Claim.from_dict(existing)
                if self.is_live(current, now):
                    if current.session_id != str(session_id):
                        raise AlreadyClaimedError(
                            item_id,
                            current.session_id,
                            claimed_at=current.claimed_at,
                            expires_at=current.expires_at,
                        )
                else:
                    logger.info(
                        "purging stale claim on %s held by session %s",
                        item_id,
                        current.session_id,
                    )
                    del claims[item_id]
            claim = Claim(
                item_id=item_id,
                session_id=str(session_id),
                pid=pid,
                claimed_at=_iso(now),
                expires_at=_iso(now + ttl),
            )
            claims[item_id] = claim.to_dict()
            result["claim"] = claim
            return payload

        self.store.update(CLAIMS_NAMESPACE, _updater, default=self._default())
        return result["claim"]

    def release(self, item_id: str, session_id: str) -> bool:
        """Drop the claim if ``session_id`` owns it; anyone else's claim is left alone."""
        released: list[bool] = []

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            claims = payload.setdefault("claims", {})
            existing = claims.get(item_id)
            if existing is not None and str(existing.get("session_id")) == str(session_id):
                del claims[item_id]
                released.append(True)
            return payload

        self.store.update(CLAIMS_NAMESPACE, _updater, default=self._default())
        return bool(released)

    def release_all(self, session_id: str) -> list[str]:
        released: list[str] = []

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            claims = payload.setdefault("claims", {})
            for item_id in list(claims):
                if str(claims[item_id].get("session_id")) == str(session_id):
                    del claims[item_id]
                    released.append(item_id)
            return payload

        self.store.update(CLAIMS_NAMESPACE, _updater, default=self._default())
        return released

    def get(self, item_id: str) -> Claim | None:
        for claim in self._live_claims():
            if claim.item_id == item_id:
                return claim
        return None

    def list(self) -> list[Claim]:
        return self._live_claims()

    def list_others(self, session_id: str) -> list[Claim]:
        return [claim for claim in self._live_claims() if claim.session_id != str(session_id)]

    def cleanup(self) -> list[Claim]:
        removed: list[Claim] = []

        def _updater(data: Any) -> dict[str, Any]:
            payload = data if isinstance(data, dict) else self._default()
            claims = payload.setdefault("claims", {})
            now = self.clock()
            for item_id in list(claims):
                claim = Claim.from_dict(claims[item_id])
                if not self.is_live(claim, now):
                    removed.append(claim)
                    del claims[item_id]
            return payload

        self.store.update(CLAIMS_NAMESPACE, _updater, default=self._default())
        if removed:
            logger.info("removed %d stale claims", len(removed))
        return removed
