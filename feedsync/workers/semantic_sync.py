# feedsync/workers/semantic_sync.py
from ..errors import TransientError, ValidationError
from ..jobs.queue import JobContext
from ..utils.logger import error, warn

OPERATIONS = ("add", "update", "delete", "run")


def validate_payload(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("semantic sync payload must be an object")
    operation = data.get("operation")
    if operation not in OPERATIONS:
        raise ValidationError(f"operation must be one of {', '.join(OPERATIONS)}")
    if operation == "run":
        if not isinstance(data.get("scope"), str) or not data["scope"]:
            raise ValidationError("scope must be a non-empty string")
    elif not isinstance(data.get("documentId"), str) or not data["documentId"]:
        raise ValidationError("documentId must be a non-empty string")
    return data


class SemanticSyncWorker:
    """Gemini File Search jobs: mirror one product document, delete one, or fan a run out."""

    def __init__(self, semantic, runner, sessions=None):
        self.semantic = semantic
        self.runner = runner
        self.sessions = sessions

    def process(self, data: dict, ctx: JobContext | None = None) -> dict:
        ctx = ctx or JobContext()
        payload = validate_payload(data)
        operation = payload["operation"]
        session_id = payload.get("sessionId")

        if operation == "run":
            return self.runner.run(payload["scope"], session_id)

        if operation == "delete":
            result = self.semantic.delete_document(payload["documentId"])
            if not result["success"]:
                warn(f"[semantic] delete {payload['documentId']}: {result.get('error')}")
            return {**result, "documentId": payload["documentId"]}

        result = self.semantic.add_or_update_document(payload["documentId"])
        if result.get("success"):
            self._count(session_id, "gemini_synced")
        elif result.get("skipped"):
            self._count(session_id, "gemini_skipped")
        elif ctx.final_attempt:
            error(f"[semantic] {payload['documentId']} failed after {ctx.attempt} attempts: {result.get('error')}")
            if session_id and self.sessions is not None:
                self.sessions.add_error(session_id, "gemini", result.get("error") or "unknown",
                                        {"documentId": payload["documentId"]})
            self._count(session_id, "gemini_failed")
            return {**result, "documentId": payload["documentId"]}
        else:
            raise TransientError(f"semantic sync of {payload['documentId']} failed: {result.get('error')}")
        return {**result, "documentId": payload["documentId"]}

    def _count(self, session_id: str | None, counter: str):
        if session_id and self.sessions is not None:
            self.sessions.increment_counter(session_id, counter)
            self.sessions.advance(session_id)
