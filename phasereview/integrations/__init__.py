"""phasereview.integrations: External service gateway modules.

All calls to the persistence/notification backend must go through the
gateway in this package, never via bare `requests` calls in services.

Every call is:
  - Authenticated (bearer token injected by the gateway)
  - Retried with exponential backoff (read operations only)
  - Circuit-broken to prevent cascade failures
  - Logged with the operation name and latency

Current gateways:
  backend_gateway.BackendGateway: operation-tagged dispatch endpoint
"""
