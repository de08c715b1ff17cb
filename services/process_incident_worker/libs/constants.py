"""Shared constants for incident decoding, outcomes and redelivery.

Outcomes (``Outcome.status``):
- ``handled``: The command's effects were applied (engine call and/or store write).
- ``ignored``: The payload was malformed, of an unknown version, or carried no
  actionable command. It is acknowledged and never redelivered.
- ``failed``: A workflow engine or store call failed, or processing was
  cancelled. Redelivery is up to the consumer.

Command kinds (metric labels, log fields and failure reasons):
- ``create_or_replace``: stop the process instance, resolve its name, upsert.
- ``delete_by_process_instance``: remove all incidents of an instance.
- ``delete_by_process_definition``: remove all incidents of a definition.
"""

OUTCOME_HANDLED = "handled"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"

COMMAND_CREATE_OR_REPLACE = "create_or_replace"
COMMAND_DELETE_BY_PROCESS_INSTANCE = "delete_by_process_instance"
COMMAND_DELETE_BY_PROCESS_DEFINITION = "delete_by_process_definition"
COMMAND_NONE = "none"

# Envelope discriminators (msg_version 3)
ENVELOPE_PUT = "PUT"
ENVELOPE_POST = "POST"
ENVELOPE_DELETE = "DELETE"

# Operations performed against collaborators
OP_STOP_PROCESS_INSTANCE = "stop_process_instance"
OP_RESOLVE_DEPLOYMENT_NAME = "resolve_deployment_name"
OP_UPSERT = "upsert"
OP_DELETE_WHERE = "delete_where"

# AMQP headers used for redelivery bookkeeping
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_ERROR = "x-error"

DEFAULT_RETRY_DELAYS_MS = [1000, 5000, 30000, 60000]

# Maximum number of payload characters echoed into logs
LOG_PAYLOAD_PREVIEW = 512
