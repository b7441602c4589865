"""Batch transaction broadcaster for EVM chains."""

from inscriber.accounts import AccountStore
from inscriber.engine import BroadcastEngine
from inscriber.models import GasPolicy, RunConfig, RunState

__all__ = ["AccountStore", "BroadcastEngine", "GasPolicy", "RunConfig", "RunState"]
