"""External protocol contracts and their REST gateways.

``venues`` builds on the quote pipeline and is imported from its module.
"""

from .base import (
    RouterProtocolClient, LendingProtocolClient, QuoteResponse, LendingAsset, LendingRequest,
    LendingPosition,
)
from .router import HttpRouterClient
from .lending import HttpLendingClient

__all__ = [
    'RouterProtocolClient',
    'LendingProtocolClient',
    'QuoteResponse',
    'LendingAsset',
    'LendingRequest',
    'LendingPosition',
    'HttpRouterClient',
    'HttpLendingClient',
]
