"""Shared vocabulary for scheduling, dispatch and delivery."""

from .models import Category, ChannelType, DeliveryFrequency, DeliveryOutcome, Severity

__all__ = ["Category", "ChannelType", "DeliveryFrequency", "DeliveryOutcome", "Severity"]
