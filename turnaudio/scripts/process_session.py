from __future__ import annotations

import argparse
import json
import logging
import sys

from turnaudio.internal_core.cancel import CancelToken
from turnaudio.internal_core.config import load_config
from turnaudio.internal_core.errors import ConversationNotFound, ProviderError, StorageError
from turnaudio.pipeline import SessionAudioPipeline


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconstruct merged conversation audio and store one clip per turn."
    )
    parser.add_argument("--session-id", required=True, help="Internal conversation session id.")
    parser.add_argument(
        "--retry-turns",
        default="",
        help="Comma-separated turn numbers to re-extract and re-upload (requires a completed reconstruction).",
    )
    parser.add_argument(
        "--deadline-sec",
        type=float,
        default=None,
        help="Abort issuing new network calls after this many seconds.",
    )
    args = parser.parse_args()

    cfg = load_config()
    logging.basicConfig(
        level=getattr(logging, cfg.TURNAUDIO_LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    pipeline = SessionAudioPipeline.from_config(cfg)
    cancel = pipeline.new_cancel_token()
    if args.deadline_sec:
        cancel = CancelToken(args.deadline_sec)

    try:
        if args.retry_turns:
            wanted = [int(x) for x in args.retry_turns.split(",") if x.strip()]
            conversation = pipeline.store.get_conversation(args.session_id)
            if not conversation.audio_url:
                raise SystemExit("no reconstructed audio stored for this session; run without --retry-turns first")
            turns = [t for t in pipeline.store.list_turns(args.session_id) if t.turn_number in wanted]
            extraction = pipeline.extract_turns(
                args.session_id, conversation.audio_url, turns, conversation.started_at, cancel=cancel
            )
            persisted = pipeline.persist_segments(args.session_id, extraction.segments, cancel=cancel)
            output = {
                "session_id": args.session_id,
                "extracted": extraction.extracted,
                "uploaded": persisted.uploaded,
                "failed": persisted.failed,
                "failed_turns": persisted.failed_turns,
            }
        else:
            output = pipeline.process_session(args.session_id, cancel=cancel).model_dump()
    except ConversationNotFound as exc:
        raise SystemExit(f"conversation not found: {exc.session_id}")
    except ProviderError as exc:
        raise SystemExit(f"provider error ({exc.code}): {exc.message}")
    except StorageError as exc:
        raise SystemExit(f"storage error ({exc.code}): {exc.message}")

    json.dump(output, sys.stdout, indent=2, default=str)
    print()


if __name__ == "__main__":
    main()
