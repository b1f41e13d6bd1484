"""Durable summarization jobs on the DBOS queue."""

import logging

from dbos import DBOS, SetWorkflowID

from groupchat.runtime import get_runtime
from groupchat.workflows.dbos_config import summarization_queue

logger = logging.getLogger(__name__)


@DBOS.step()
async def run_summarization_job(chat_id: str, job_id: str, user_id: str) -> int | None:
    """Run the job; returns the new summary version, if one was written."""
    summary = await get_runtime().orchestrator.run_job(chat_id, job_id, user_id)
    return summary.version if summary else None


@DBOS.workflow()
async def summarization_workflow(chat_id: str, job_id: str, user_id: str) -> int | None:
    """One summarization job. The workflow id is the job id."""
    logger.info(f"Summarization workflow {DBOS.workflow_id} started for chat {chat_id}")
    return await run_summarization_job(chat_id, job_id, user_id)


async def enqueue_summarization(chat_id: str, job_id: str, user_id: str) -> None:
    """Scheduler for the orchestrator: hand the job to the durable queue."""
    with SetWorkflowID(job_id):
        summarization_queue.enqueue(summarization_workflow, chat_id, job_id, user_id)
