"""DBOS configuration and initialization."""

import os
from dbos import DBOS, DBOSConfig, Queue

from groupchat.config import settings

# DBOS configuration
# application_version prevents recovery of old workflows after code changes
# Bump this when workflow step order/logic changes to avoid DBOSUnexpectedStepError
WORKFLOW_VERSION = "1"

dbos_config: DBOSConfig = {
    "name": "groupchat",
    "system_database_url": settings.database_url or os.environ.get("DBOS_SYSTEM_DATABASE_URL"),
    "application_version": WORKFLOW_VERSION,
}

# Initialize DBOS - must be done before defining workflows
DBOS(config=dbos_config)

# Queue for summarization jobs. The per-chat state flag already allows only
# one job per chat, the concurrency limit bounds LM load across chats.
summarization_queue = Queue(
    "summarization",
    concurrency=4,
)
