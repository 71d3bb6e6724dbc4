from clipstream_core.alignment.dtw import (
    Alignment,
    dtw,
    dtw_distance,
    subsequence_dtw,
    warping_path,
)
from clipstream_core.alignment.relate import (
    AlignmentRules,
    RelationshipFinder,
    classify_pair,
    comparable_duration,
    match_pov,
    match_trimmed,
)

__all__ = [
    "Alignment",
    "AlignmentRules",
    "RelationshipFinder",
    "classify_pair",
    "comparable_duration",
    "dtw",
    "dtw_distance",
    "match_pov",
    "match_trimmed",
    "subsequence_dtw",
    "warping_path",
]
