"""deepcite - citation-grounded research engine

Simple CLI for running a research job to completion.
"""

import argparse
import asyncio

from deepcite.agents.orchestrator import build_orchestrator
from deepcite.config import settings
from deepcite.models.events import SSEEvent
from deepcite.models.jobs import ReportType, ResearchJob


def print_event(event: SSEEvent) -> None:
    event_type = event.event.value
    data = event.data

    if event_type == "plan_created":
        queries = data.get("search_queries", [])
        print(f"\n[*] Research Plan ({len(queries)} queries):")
        for i, query in enumerate(queries, 1):
            print(f"  {i}. {query[:80]}")

    elif event_type == "state_changed":
        print(f"\n[~] {data.get('from')} -> {data.get('to')}")

    elif event_type == "search_completed":
        print(f"  [+] Search found {data.get('urls_found')} URLs")

    elif event_type == "source_acquired":
        marker = "+" if data.get("status") == "success" else "-"
        print(f"  [{marker}] {data.get('status')}: {data.get('title') or data.get('url')}")

    elif event_type == "draft_completed":
        if data.get("llm_unavailable"):
            print("\n[!] Language model unavailable; report marks synthesis as failed")
        else:
            print(f"\n[+] Draft written with {data.get('citations')} citations")

    elif event_type == "job_failed":
        print(f"\n[!] Job failed: {data.get('message', 'Unknown error')}")

    elif event_type == "error":
        print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


async def run_research(prompt: str, sources: int, iterations: int) -> ResearchJob:
    """Run one job and print its full report."""
    print(f"Research prompt: {prompt}")
    print("-" * 50)

    orchestrator = build_orchestrator()
    orchestrator.add_observer(print_event)
    job = await orchestrator.run(
        ResearchJob(prompt=prompt, target_source_count=sources, max_iterations=iterations)
    )

    print(f"\n[*] Job {job.id} finished as {job.state.value}")
    print(f"   Sources: {len(job.acquired_source_ids)}")
    print(f"   Coverage: {job.coverage_score:.2f}")
    if job.grounding_score is not None:
        print(f"   Grounding: {job.grounding_score:.0%}")

    reports = await orchestrator.store.get_reports(job.id)
    full = [r for r in reports if r.report_type == ReportType.FULL]
    if full:
        print(f"\n{'='*50}")
        print("REPORT:")
        print(f"{'='*50}")
        print(full[-1].content)
    return job


def main():
    parser = argparse.ArgumentParser(description="deepcite research engine")
    parser.add_argument("--prompt", "-p", required=True, help="Research question")
    parser.add_argument(
        "--sources", "-s", type=int, default=settings.target_source_count, help="Target source count"
    )
    parser.add_argument(
        "--iterations", "-i", type=int, default=settings.max_iterations, help="Maximum harvest iterations"
    )

    args = parser.parse_args()

    asyncio.run(run_research(args.prompt, args.sources, args.iterations))


if __name__ == "__main__":
    main()
