"""Slot reservation core: booking, availability and cancellation."""
