"""
Legacy import job: load exported legacy documents into the database.

Reads JSON-lines exports (one document per line) of user documents and,
optionally, pairing code documents. The document id must be present in each
line (`id` for users, `code` for pairing codes). After importing, the orphan
cleanup runs so imported state satisfies the inheritance rules.

Usage:
    python -m couplelink.workers.legacy_import_job --accounts users.jsonl \
        [--codes partner_codes.jsonl] [--skip-cleanup]
"""

import argparse
import json
import logging
import sys
from typing import Iterator, List, Optional

from pydantic import ValidationError

from couplelink.database.session import get_session_factory
from couplelink.services.legacy_account_import import (
    LegacyAccountDocument,
    LegacyPairingCodeDocument,
    import_legacy_documents,
)
from couplelink.services.orphan_auditor import OrphanAuditor

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def read_jsonl(path: str) -> Iterator[dict]:
    with open(path, encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_number}: invalid JSON ({e.msg})") from e


def parse_documents(path: Optional[str], model) -> List:
    if not path:
        return []
    documents = []
    for raw in read_jsonl(path):
        try:
            documents.append(model.model_validate(raw))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid legacy document",
                extra={"path": path, "document_id": raw.get("id") or raw.get("code"), "error": str(e)},
            )
    return documents


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import legacy account and pairing code documents")
    parser.add_argument("--accounts", required=True, help="JSON-lines export of user documents")
    parser.add_argument("--codes", help="JSON-lines export of pairing code documents")
    parser.add_argument("--skip-cleanup", action="store_true", help="Do not run orphan cleanup afterwards")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    accounts = parse_documents(args.accounts, LegacyAccountDocument)
    codes = parse_documents(args.codes, LegacyPairingCodeDocument)
    logger.info(
        "Legacy Import Job starting",
        extra={"accounts": len(accounts), "codes": len(codes)},
    )

    session = get_session_factory()()
    try:
        report = import_legacy_documents(session, accounts, codes)
        logger.info("Legacy Import Job stats", extra=report.to_dict())
        if not args.skip_cleanup:
            cleanup = OrphanAuditor(session).cleanup()
            logger.info("Post-import orphan cleanup", extra=cleanup.to_dict())
    except Exception as exc:
        logger.error(
            "Legacy Import Job failed",
            extra={"error": str(exc)},
            exc_info=True,
        )
        return 1
    finally:
        session.close()

    logger.info("Legacy Import Job finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
