"""Internal libraries for the process incident worker.

Modules include configuration, the message decoder, the reconciliation
controller, the Camunda gateway, the PostgreSQL incident store, RabbitMQ
helpers, metrics, tracing and retry utilities.
"""
