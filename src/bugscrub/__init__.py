"""bugscrub — on-device PII scrubbing and reliable delivery for bug reports."""

__version__ = "0.1.0"

from .builder import RawReport, ReportBuilder
from .client import BugReporter, SubmitResult
from .config import PipelineConfig, load_config, load_from_yaml
from .dedupe import DuplicateFilter, fingerprint
from .engine import DeliveryEngine, DeliveryResult
from .errors import BugscrubError, ConfigError, DeliveryError, MalformedInputError, StorageError
from .image import ImageSanitizer
from .patterns import PatternRegistry, custom_detector
from .persistent_queue import PersistentQueue
from .redactor import TextSanitizer
from .storage import MemoryStorage, SqliteStorage
from .transport import ApiKeyAuth, BearerAuth, CollectorTransport, HeaderAuth
from .types import BugReport, EntryStatus, QueueEntry, Rect, RedactionReport, Severity, Span, TextRun

__all__ = [
    "BugReporter", "SubmitResult",
    "RawReport", "ReportBuilder",
    "TextSanitizer", "ImageSanitizer",
    "PatternRegistry", "custom_detector",
    "DuplicateFilter", "fingerprint",
    "PersistentQueue", "MemoryStorage", "SqliteStorage",
    "CollectorTransport", "ApiKeyAuth", "BearerAuth", "HeaderAuth",
    "DeliveryEngine", "DeliveryResult",
    "PipelineConfig", "load_config", "load_from_yaml",
    "BugscrubError", "ConfigError", "DeliveryError", "MalformedInputError", "StorageError",
    "BugReport", "EntryStatus", "QueueEntry", "Rect", "RedactionReport", "Severity", "Span", "TextRun",
]
