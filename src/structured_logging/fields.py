"""Canonical logging field names for the episode scheduler.

Keeping names centralized keeps the dispatcher, callback handler and
lifecycle controller emitting the same structured keys.
"""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"
EXCEPTION = "exception"

# Scheduling correlation fields.
TICK_ID = "tick_id"
EPISODE_ID = "episode_id"
PROJECT_ID = "project_id"
ORGANIZATION_ID = "organization_id"
QUEUE_ENTRY_ID = "queue_entry_id"
LEASE_HOLDER = "lease_holder"
CALLBACK = "callback"
STAGE = "stage"

# Common service-level fields.
SERVICE = "service"
ENVIRONMENT = "environment"
