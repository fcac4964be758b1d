"""Partition Promoter - Deduplicates staging partitions and promotes them into archive tables."""

__version__ = "0.1.0"

__all__ = [
    "Job",
    "DatatypePolicy",
    "QueryBuilder",
    "AnnotatedTable",
    "SanityChecker",
    "PromotionSequencer",
    "PromotionRunner",
    "Warehouse",
]
