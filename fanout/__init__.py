"""Broadcast of published drops to store subscribers."""

from fanout.dispatcher import FanoutDispatcher, FanoutOutcome, RecipientResult

__all__ = ["FanoutDispatcher", "FanoutOutcome", "RecipientResult"]
