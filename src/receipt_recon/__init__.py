"""영수증-ERP 전표 대사 엔진"""

from receipt_recon.batch_matcher import AutoMatcher, AutoMatchRequest, BatchResult
from receipt_recon.match_service import MatchService
from receipt_recon.matcher import find_best_match, rank_candidates, score_match

__all__ = [
    "AutoMatcher",
    "AutoMatchRequest",
    "BatchResult",
    "MatchService",
    "find_best_match",
    "rank_candidates",
    "score_match",
]
