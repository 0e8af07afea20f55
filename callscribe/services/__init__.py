"""Application services (post-call summary)."""
from callscribe.services.summary import CallSummary, SummaryService

__all__ = ["CallSummary", "SummaryService"]
