"""Document-to-facts pipeline: discovery, download, parse, classify, extract."""

from fibra.documents.classifier import KeywordDocumentClassifier
from fibra.documents.discovery import DocumentDiscoveryService
from fibra.documents.download import DocumentDownloadService
from fibra.documents.facts import FactsExtractionService, extract_facts
from fibra.documents.models import DocumentKind, DocumentRecord, DocumentStatus
from fibra.documents.parser import DocumentParserService
from fibra.documents.pipeline import DocumentPipeline

__all__ = [
    "DocumentDiscoveryService",
    "DocumentDownloadService",
    "DocumentKind",
    "DocumentParserService",
    "DocumentPipeline",
    "DocumentRecord",
    "DocumentStatus",
    "FactsExtractionService",
    "KeywordDocumentClassifier",
    "extract_facts",
]
