"""inboxq - turn a family inbox into calendar events and todos"""

from __future__ import annotations

__version__ = "1.0.0"


# Lazy imports so the CLI and tests can load light modules without the full stack
def __getattr__(name: str):
    """
    Lazy imports to avoid loading the database layer when only importing models.
    """
    if name in ("EmailProcessor", "ProcessingOptions", "ProcessingResult"):
        from inboxq.pipeline import models, orchestrator

        if name == "EmailProcessor":
            return orchestrator.EmailProcessor
        if name == "ProcessingOptions":
            return models.ProcessingOptions
        if name == "ProcessingResult":
            return models.ProcessingResult

    if name == "DeliveryEngine":
        from inboxq.events.delivery import DeliveryEngine

        return DeliveryEngine

    if name == "cleanup_past_items":
        from inboxq.events.sweeper import cleanup_past_items

        return cleanup_past_items

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "DeliveryEngine",
    "EmailProcessor",
    "ProcessingOptions",
    "ProcessingResult",
    "cleanup_past_items",
]
