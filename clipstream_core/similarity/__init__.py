from clipstream_core.similarity.distance import distance, distances_to
from clipstream_core.similarity.index import BruteForceIndex, Neighbor, SimilarityIndex

__all__ = [
    "BruteForceIndex",
    "Neighbor",
    "SimilarityIndex",
    "distance",
    "distances_to",
]
