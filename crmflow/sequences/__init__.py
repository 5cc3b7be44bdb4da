"""CrmFlow Sequences - multi-step outreach driven by periodic batch runs."""

from .processor import SequenceProcessor

__all__ = ["SequenceProcessor"]
