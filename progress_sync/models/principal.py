from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated learner extracted from a validated access token.

    Every progress endpoint is scoped to ``user_id``; events in a bulk
    batch must carry the same id.
    """

    user_id: str
    roles: frozenset[str]
