"""Media generation gateway core.

Turns OpenAI-style chat completion requests into calls against a slow,
rate-limited image/video generation upstream:
  - Credential Pool (round-robin over upstream tokens)
  - Admission Controller (per-credential concurrency budget)
  - Dispatcher (rotation + admission, or NO_CAPACITY)
  - Upstream Client (httpx, typed errors)
  - Artifact Cache (TTL files on disk, periodic sweep)
  - Request Orchestrator (per-request state machine, streamed frames)
"""
