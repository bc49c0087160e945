"""Model registry.

Importing this module pulls every mapped class into ``Base.metadata`` so that
``create_all`` (local development and tests) sees the complete schema.
"""


def register_models() -> None:
    from src.features.clients.models import OAuthClient  # noqa: F401
    from src.features.consent.models import ConsentEvent, UserConsent  # noqa: F401
    from src.features.oauth.models import AuthorizationCode, ConsentTicket, RefreshToken  # noqa: F401
    from src.features.user.models import User  # noqa: F401
    from src.shared.audit.audit import AuditLog  # noqa: F401
