"""Infrastructure modules for favfund"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, PassStats  # noqa: F401
from .ledger import LedgerStore, get_ledger  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"PassStats",
	"LedgerStore",
	"get_ledger",
]
