"""Single source for request trace_id. Use scope for ASGI, request.scope for Starlette."""
import uuid

SCOPE_KEY = "trace_id"


def ensure_trace_id(scope: dict) -> str:
    """Get or set trace_id on ASGI scope. Returns the same trace_id for the request lifecycle."""
    tid = scope.get(SCOPE_KEY)
    if tid and isinstance(tid, str):
        return tid
    tid = str(uuid.uuid4())[:16]
    scope[SCOPE_KEY] = tid
    return tid


class TraceIdMiddleware:
    """ASGI middleware: assigns trace_id to every HTTP request and echoes it as X-Trace-Id."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope: dict, receive, send):
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return
        trace_id = ensure_trace_id(scope)

        async def send_with_trace(message):
            if message.get("type") == "http.response.start":
                headers = [(k, v) for k, v in message.get("headers") or [] if k.lower() != b"x-trace-id"]
                headers.append((b"x-trace-id", trace_id.encode()))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_trace)
