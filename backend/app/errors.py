"""
Engine error taxonomy.

Services raise these; app.main registers a handler that turns them into
JSON responses with a stable ``error`` code next to the human ``detail``.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for recommendation-engine failures."""

    status_code = 500
    code = "engine_error"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail}


class AccessDenied(EngineError):
    """Role or account-scope violation."""

    status_code = 403
    code = "access_denied"


class InvalidState(EngineError):
    """Illegal recommendation or campaign state transition."""

    status_code = 409
    code = "invalid_state"


class NotFound(EngineError):
    """Unknown campaign, recommendation, account or user id."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        detail = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(detail)


class ProviderUnavailable(EngineError):
    """The reasoning backend could not serve a generation run at all."""

    status_code = 503
    code = "provider_unavailable"


class PartialFailure(EngineError):
    """
    A generation run finished but some campaigns could not be evaluated.
    Not a hard failure: the recommendations that were generated are kept.
    """

    status_code = 207
    code = "partial_failure"

    def __init__(self, summary: dict):
        self.summary = summary
        failed = summary.get("failed", [])
        super().__init__(
            f"Generated {summary.get('generated', 0)} recommendations; "
            f"{len(failed)} campaigns failed"
        )

    @property
    def failed_campaign_ids(self) -> list[str]:
        return [f["campaign_id"] for f in self.summary.get("failed", [])]

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail, **self.summary}
