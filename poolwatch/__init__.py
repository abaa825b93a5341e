"""Token pool aggregation and change broadcasting."""

from .aggregate import ProviderPayload, build_token_aggregate, merge_sources
from .config import Settings, load_settings
from .diff import CooldownTracker, DiffEngine
from .fetch import RetryPolicy, with_backoff
from .merge import merge_pools
from .models import Patch, Pool, TokenAggregate, TokenConfig, TokenResult
from .normalize import normalize_pools
from .service import CycleReport, RefreshService, open_service

__version__ = "0.1.0"

__all__ = [
    "CooldownTracker",
    "CycleReport",
    "DiffEngine",
    "Patch",
    "Pool",
    "ProviderPayload",
    "RefreshService",
    "RetryPolicy",
    "Settings",
    "TokenAggregate",
    "TokenConfig",
    "TokenResult",
    "build_token_aggregate",
    "load_settings",
    "merge_pools",
    "merge_sources",
    "normalize_pools",
    "open_service",
    "with_backoff",
    "__version__",
]
