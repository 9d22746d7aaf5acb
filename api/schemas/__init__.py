from api.schemas.common import ErrorResponse, HealthResponse, InvariantsResponse, TrippedBreakerResponse
from api.schemas.mandates import VerificationResponse

__all__ = [
    "ErrorResponse",
    "HealthResponse",
    "InvariantsResponse",
    "TrippedBreakerResponse",
    "VerificationResponse",
]
