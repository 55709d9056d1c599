"""
Load the organization policy document into the policy knowledge base.

    python -m scripts.ingest_policy data/acme_policy.pdf
"""
import argparse
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from core.config import Settings
from core.errors import AssistantError
from core.logging_config import get_logger, setup_logging
from services.container import POLICY_COLLECTION
from services.document_extractor import DocumentExtractor
from services.embedding_service import EmbeddingService
from services.policy_kb import PolicyKnowledgeBase
from services.vector_store import open_collection

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest a policy document (PDF, DOCX or TXT).")
    parser.add_argument("path", type=Path, help="policy document to ingest")
    parser.add_argument("--store-dir", default=None, help="vector store directory (default: VECTOR_STORE_DIR)")
    parser.add_argument("--backend", choices=["disk", "faiss"], default=None)
    parser.add_argument("--model", default=None, help="embedding model (default: EMBEDDING_MODEL)")
    return parser


def ingest_file(path: Path, kb: PolicyKnowledgeBase, extractor: Optional[DocumentExtractor] = None) -> int:
    extractor = extractor or DocumentExtractor()
    mime = mimetypes.guess_type(path.name)[0]
    text = extractor.extract(path.read_bytes(), mime, path.name).strip()
    return kb.ingest(text)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    if not args.path.exists():
        logger.error("Policy file not found", extra={"path": str(args.path)})
        return 1

    kb = PolicyKnowledgeBase(
        open_collection(
            args.store_dir or settings.vector_store_dir,
            POLICY_COLLECTION,
            args.backend or settings.vector_backend,
        ),
        EmbeddingService(args.model or settings.embedding_model),
    )
    try:
        count = ingest_file(args.path, kb)
    except AssistantError as e:
        logger.error("Policy ingestion failed", extra={"path": str(args.path), "error": str(e)})
        return 1
    logger.info("Policy ingestion complete", extra={"path": str(args.path), "chunks": count})
    return 0


if __name__ == "__main__":
    sys.exit(main())
