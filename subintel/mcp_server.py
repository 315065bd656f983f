from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from subintel import services
from subintel.agent import list_reports, run_agent_conversation
from subintel.importer import process_import_job as run_import_job
from subintel.jobs import JOB_TYPES, get_import_job, list_import_jobs as query_import_jobs
from subintel.llm import get_llm_client
from subintel.schemas import AgentMessage

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def subintel_lifespan(server: FastMCP) -> AsyncIterator[None]:
    services.get_store()
    yield


mcp = FastMCP(
    "Subintel",
    instructions=(
        "Subintel holds subsea project, contract, forecast and market-report data imported "
        "from Rystad spreadsheets and PDF reports. Start with get_data_overview(), check "
        "imports with list_import_jobs(), and ask questions or request PDF reports with ask_agent()."
    ),
    lifespan=subintel_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("subintel://overview")
def subintel_overview() -> str:
    """Data model, import job types and workflow."""
    return json.dumps({
        "system": "Subintel - Subsea Sales Intelligence",
        "data_model": {
            "projects": "Roll-up per development project, asset and country: XMT count, SURF km, subsea units, year span.",
            "contracts": "Awarded or expected contracts from award forecasts and contract-award PDFs.",
            "forecasts": "Yearly market metrics (canonical metric slugs) extracted from market reports.",
            "upcoming_awards": "Rystad upcoming award rows.",
            "xmt_data / surf_data / subsea_unit_data": "Raw Rystad spreadsheet rows.",
            "documents": "One markdown summary per imported market-report PDF.",
            "ai_reports": "PDF reports generated by the agent.",
        },
        "job_types": list(JOB_TYPES),
        "workflow": [
            "1. get_data_overview() - table counts and recent imports.",
            "2. list_import_jobs(status) - pending, processing, completed or failed jobs.",
            "3. process_import_job(job_id) - run or retry a queued job.",
            "4. ask_agent(question) - answer from stored data; ask for a report to get a PDF link.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Data
# ---------------------------------------------------------------------------


@mcp.tool()
def get_data_overview() -> dict:
    """Row counts per table, import job counts by status, and the latest batches and jobs."""
    return services.data_overview(services.get_store())


@mcp.tool()
def list_import_jobs(status: str | None = None, limit: int = 20) -> list[dict]:
    """List recent import jobs, newest first.

    Args:
        status: Optional filter: pending, processing, completed or failed.
        limit: Max jobs to return (default 20).
    """
    jobs = query_import_jobs(services.get_store(), limit=limit, status=status)
    return [services.to_jsonable(j) for j in jobs]


@mcp.tool()
async def process_import_job(job_id: str) -> dict:
    """Run a queued import job to completion and return its final state."""
    store = services.get_store()
    if get_import_job(store, job_id) is None:
        return {"error": f"Import job {job_id} not found"}
    try:
        stats = await run_import_job(job_id, store=store, storage=services.get_storage())
    except Exception as exc:
        job = get_import_job(store, job_id) or {}
        return {"error": job.get("error_message") or str(exc), "job_id": job_id}
    return {"job_id": job_id, **stats.model_dump()}


# ---------------------------------------------------------------------------
# Tools: Agent
# ---------------------------------------------------------------------------


@mcp.tool()
async def ask_agent(question: str, history: list[dict] | None = None, user_id: str = "mcp-user") -> dict:
    """Ask the Subintel agent a question about the imported data.

    Args:
        question: The request, e.g. "Report for Johan Sverdrup 2024-2026".
        history: Optional earlier turns as [{"role": "user"|"assistant", "content": "..."}].
        user_id: Owner recorded on generated reports.
    """
    messages = [AgentMessage.model_validate(m) for m in (history or [])]
    messages.append(AgentMessage(role="user", content=question))
    response = await run_agent_conversation(
        messages, user_id, f"{user_id}@subintel.local",
        store=services.get_store(), storage=services.get_storage(), llm=get_llm_client(),
    )
    return response.model_dump(by_alias=True)


@mcp.tool()
def list_agent_reports(user_id: str = "mcp-user", limit: int = 20) -> list[dict]:
    """List reports generated for a user, with fresh download links."""
    reports = list_reports(services.get_store(), services.get_storage(), user_id, limit)
    return [r.model_dump() for r in reports]


def main():
    """Run the Subintel MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
