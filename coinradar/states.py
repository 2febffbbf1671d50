"""Coin status state machine.

Every status change goes through :func:`transition`, which checks the pair
against ``ALLOWED_TRANSITIONS``, updates the row only if it still holds the
expected status and appends a :class:`StatusEvent`.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from coinradar.models import Coin, CoinStatus, StatusEvent
from coinradar.utils import utcnow

log = logging.getLogger(__name__)

NEW = "new"

S = CoinStatus

ALLOWED_TRANSITIONS: frozenset[tuple[str, str]] = frozenset({
    (NEW, S.PENDING),
    (S.PENDING, S.PROCESSING),
    (S.PROCESSING, S.INSUFFICIENT_DATA),
    (S.PROCESSING, S.RETRY_PENDING),
    (S.PROCESSING, S.FAILED),
    (S.PROCESSING, S.DEEP_ANALYSIS_PENDING),
    (S.DEEP_ANALYSIS_PENDING, S.ANALYZED),
    (S.RETRY_PENDING, S.PROCESSING),
    (S.RETRY_PENDING, S.PENDING),
    (S.RETRY_PENDING, S.FAILED),
    # stuck sweep and manual reset
    (S.PROCESSING, S.PENDING),
    (S.DEEP_ANALYSIS_PENDING, S.PENDING),
    (S.ANALYZED, S.PENDING),
    (S.FAILED, S.PENDING),
    (S.INSUFFICIENT_DATA, S.PENDING),
})


class InvalidTransition(ValueError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"illegal status transition {from_status!r} -> {to_status!r}")
        self.from_status = from_status
        self.to_status = to_status


def is_allowed(from_status: str, to_status: str) -> bool:
    return (str(from_status), str(to_status)) in ALLOWED_TRANSITIONS


def record_creation(session: Session, coin: Coin, reason: str) -> None:
    """Audit row for a freshly inserted coin (status ``pending``)."""
    session.add(StatusEvent(coin=coin, from_status=NEW, to_status=CoinStatus.PENDING, reason=reason))


def transition(
    session: Session,
    coin: Coin,
    to_status: CoinStatus,
    reason: str = "",
    **values: Any,
) -> bool:
    """Move *coin* from its current status to *to_status*.

    Extra column values in ``values`` are written in the same UPDATE. Returns
    False (and changes nothing) when the row no longer holds the status we
    read, i.e. another run got there first. The caller commits.
    """
    from_status = str(coin.status)
    if not is_allowed(from_status, to_status):
        raise InvalidTransition(from_status, str(to_status))

    session.flush()
    stmt = (
        update(Coin)
        .where(Coin.id == coin.id, Coin.status == from_status)
        .values(status=str(to_status), updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        log.warning("Coin %s is no longer %s, skipping move to %s", coin.id, from_status, to_status)
        return False
    session.refresh(coin, ["status", "updated_at", *values])

    session.add(StatusEvent(
        coin_id=coin.id, from_status=from_status, to_status=str(to_status), reason=reason[:300],
    ))
    log.debug("Coin %s: %s -> %s (%s)", coin.id, from_status, to_status, reason)
    return True
