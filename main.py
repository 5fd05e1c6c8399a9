"""citewatch - AI citation tracking

Simple CLI for queueing query runs and draining the queue locally.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from citewatch.models.records import ClientContext, Competitor
from citewatch.queue.work_queue import WorkQueue, get_store
from citewatch.services.run_aggregator import RunAggregator, build_payloads
from citewatch.worker.controller import start_worker
from citewatch.worker.trigger import InlineContinuation


def load_queries(path: Path) -> tuple[list[dict], ClientContext]:
    """Accepts a list of strings/objects, or {"client": {...}, "queries": [...]}."""
    data = json.loads(path.read_text(encoding="utf-8"))
    client = ClientContext()
    if isinstance(data, dict):
        raw_client = data.get("client") or {}
        client = ClientContext(
            name=str(raw_client.get("name") or ""),
            domain=str(raw_client.get("domain") or ""),
            competitors=[
                Competitor(name=str(c.get("name", "")), domain=str(c.get("domain", "")))
                for c in raw_client.get("competitors") or []
            ],
        )
        data = data.get("queries") or []
    queries = [{"query_text": q} if isinstance(q, str) else q for q in data]
    return queries, client


async def enqueue(path: Path, platform: str, max_attempts: int | None):
    queries, client = load_queries(path)
    payloads = build_payloads(queries, platform, client)
    if not payloads:
        print("[!] No queries found")
        return 1

    store = get_store()
    await store.initialize()
    try:
        run, item_ids = await RunAggregator(store).create_run(
            payloads, platform=platform, max_attempts=max_attempts
        )
    finally:
        await store.close()
    print(f"[*] Run {run.id} queued with {len(item_ids)} items")
    return 0


async def work(batch_size: int | None, max_runtime: int | None):
    continuation = InlineContinuation()
    summary = await start_worker(batch_size, max_runtime, trigger=continuation)
    await continuation.wait()
    print(f"[*] First invocation: {summary.processed} completed, {summary.failed} failed, "
          f"{summary.retried} retried in {summary.runtime_ms}ms")
    if summary.error:
        print(f"[!] Error: {summary.error}")
        return 1

    store = get_store()
    await store.initialize()
    try:
        stats = await WorkQueue(store).stats()
    finally:
        await store.close()
    print(f"[*] Queue: {json.dumps(stats)}")
    return 0


async def status(run_id: str | None):
    store = get_store()
    await store.initialize()
    try:
        if run_id:
            progress = await RunAggregator(store).progress(run_id)
            if progress is None:
                print(f"[!] Run {run_id} not found")
                return 1
            print(json.dumps(progress.to_dict(), indent=2))
        else:
            print(json.dumps(await WorkQueue(store).stats(), indent=2))
    finally:
        await store.close()
    return 0


def main():
    parser = argparse.ArgumentParser(description="citewatch AI citation tracking")
    subparsers = parser.add_subparsers(dest="command", required=True)

    enqueue_parser = subparsers.add_parser("enqueue", help="Create a run from a JSON file of queries")
    enqueue_parser.add_argument("file", type=Path, help="JSON file with queries")
    enqueue_parser.add_argument(
        "--platform", "-p", default="chatgpt", help="chatgpt, perplexity or both"
    )
    enqueue_parser.add_argument("--max-attempts", type=int, help="Attempts per item")

    work_parser = subparsers.add_parser("work", help="Drain the queue in this process")
    work_parser.add_argument("--batch-size", "-b", type=int, help="Items per claim")
    work_parser.add_argument("--max-runtime", type=int, help="Budget per invocation in ms")

    status_parser = subparsers.add_parser("status", help="Show queue or run progress")
    status_parser.add_argument("--run-id", "-r", help="Run to inspect")

    args = parser.parse_args()

    if args.command == "enqueue":
        code = asyncio.run(enqueue(args.file, args.platform, args.max_attempts))
    elif args.command == "work":
        code = asyncio.run(work(args.batch_size, args.max_runtime))
    else:
        code = asyncio.run(status(args.run_id))
    sys.exit(code)


if __name__ == "__main__":
    main()
