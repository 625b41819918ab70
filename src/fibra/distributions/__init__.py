"""Distribution import and reconciliation."""

from fibra.distributions.importer import DistributionImporter
from fibra.distributions.models import (
    DistributionRecord,
    DistributionStatus,
    DistributionType,
    OfficialDistributionRecord,
    ReconciliationSummary,
)
from fibra.distributions.reconciler import DistributionReconciler

__all__ = [
    "DistributionImporter",
    "DistributionReconciler",
    "DistributionRecord",
    "DistributionStatus",
    "DistributionType",
    "OfficialDistributionRecord",
    "ReconciliationSummary",
]
