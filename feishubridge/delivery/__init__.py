"""Outbound delivery of agent replies."""

from feishubridge.delivery.scheduler import DeliveryScheduler, JobDelivery

__all__ = ["DeliveryScheduler", "JobDelivery"]
