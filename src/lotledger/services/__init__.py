"""LotLedger services package.

Each service is independently testable and communicates via Protocol
interfaces using dependency injection.
"""

from lotledger.services.matching import IMatchingService, MatchingService

__all__: list[str] = [
    "IMatchingService",
    "MatchingService",
]
