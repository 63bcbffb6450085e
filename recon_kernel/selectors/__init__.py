"""Read-only query selectors."""

from recon_kernel.selectors.base import BaseSelector
from recon_kernel.selectors.match_selector import MatchRecordDTO, MatchSelector

__all__ = ["BaseSelector", "MatchRecordDTO", "MatchSelector"]
