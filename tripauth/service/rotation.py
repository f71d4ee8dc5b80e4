"""Refresh-token rotation policies.

A policy is any callable taking a ``RotationContext`` and returning ``True``
when the refresh should mint a new refresh token and retire the old one.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from tripauth.config import RotationMode, Settings
from tripauth.storage.models import SessionRecord


@dataclass(frozen=True)
class RotationContext:
    identity_id: str
    session: SessionRecord
    now: datetime


RotationPolicy = Callable[[RotationContext], bool]


def always_rotate() -> RotationPolicy:
    def policy(ctx: RotationContext) -> bool:
        return True

    return policy


def never_rotate() -> RotationPolicy:
    def policy(ctx: RotationContext) -> bool:
        return False

    return policy


def sampled_rotation(rate: float, rng: Optional[random.Random] = None) -> RotationPolicy:
    """Rotate a ``rate`` fraction of refreshes.

    Pass a seeded ``random.Random`` to make the decision sequence reproducible.
    """
    if not 0.0 <= rate <= 1.0:
        raise ValueError("rotation rate must be between 0 and 1")
    source = rng or random.Random()

    def policy(ctx: RotationContext) -> bool:
        return source.random() < rate

    return policy


def age_rotation(threshold: timedelta) -> RotationPolicy:
    """Rotate once the session's refresh token is older than ``threshold``."""

    def policy(ctx: RotationContext) -> bool:
        return ctx.now - ctx.session.issued_at >= threshold

    return policy


def build_rotation_policy(
    settings: Settings, *, rng: Optional[random.Random] = None
) -> RotationPolicy:
    mode = settings.rotation_policy
    if mode == RotationMode.NEVER:
        return never_rotate()
    if mode == RotationMode.SAMPLED:
        return sampled_rotation(settings.rotation_sample_rate, rng)
    if mode == RotationMode.AGE:
        return age_rotation(timedelta(minutes=settings.rotation_max_age_minutes))
    return always_rotate()
