"""
Message Queue — Decouples routing from downstream processing.

- RoutingEngine APPENDS routed messages to Redis Streams
- Consumer-group workers CONSUME them and call the AI engine, workflow
  engine or channel adapters
- Supports Redis Streams (production) and an in-memory backend with the
  same group semantics (dev, tests)
"""
