#!/usr/bin/env python3
"""Re-embed the knowledge base and report embedding cache health.

Loads the question/answer knowledge base, regenerates document embeddings
(clearing cached ones first unless --no-force is given) and prints the index
status as JSON.

Usage:
    # Clear and regenerate every embedding
    python scripts/reset_rag_embeddings.py

    # Only fill embeddings that are missing or stale
    python scripts/reset_rag_embeddings.py --no-force

    # Report status without calling the embedding provider
    python scripts/reset_rag_embeddings.py --status-only

Environment variables:
    EMBEDDING_PROVIDER: "openai" or "google"
    OPENAI_API_KEY / GOOGLE_AI_API_KEY: key for the selected provider
    EMBEDDING_CACHE_BACKEND: "memory" (default) or "redis"
    REDIS_URL: Redis connection URL when the redis cache is used
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from dotenv import load_dotenv

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset knowledge base embeddings")
    parser.add_argument(
        "--force",
        dest="force",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Clear cached embeddings before regenerating (default: on)",
    )
    parser.add_argument(
        "--knowledge-base",
        type=Path,
        default=None,
        help="Path to the knowledge base JSON (default: KNOWLEDGE_BASE_PATH)",
    )
    parser.add_argument(
        "--status-only",
        action="store_true",
        help="Only report embedding status",
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Reset embeddings and print the resulting status."""
    from cv_rag.core.config import get_settings
    from cv_rag.knowledge.engine import create_context_engine
    from cv_rag.knowledge.errors import EmbeddingProviderNotConfiguredError, KnowledgeBaseLoadError

    args = parse_args(argv)

    env_path = backend_dir / ".env"
    if env_path.exists():
        load_dotenv(env_path)
        logger.info(f"Loaded environment from: {env_path}")

    settings = get_settings()

    try:
        engine = create_context_engine(settings, knowledge_base_path=args.knowledge_base)
    except KnowledgeBaseLoadError as e:
        logger.error(str(e))
        return 1

    logger.info(f"Loaded {len(engine.entries)} entries ({engine.document_count} documents)")

    try:
        if args.status_only:
            status = await engine.get_embedding_status()
        else:
            status = await engine.prepare_embeddings(force=args.force)
    except EmbeddingProviderNotConfiguredError as e:
        logger.error(f"{e} Set EMBEDDING_PROVIDER and the provider API key.")
        return 1

    print(json.dumps(status.model_dump(), indent=2))
    logger.info(
        f"Embeddings: total={status.total} cached={status.cached} missing={status.missing}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
