"""Quart JSON API exposing the knowledge base commands."""
from typing import Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from quart import Quart, current_app, jsonify, request

from wali import config
from wali.app_state import AppState
from wali.errors import (
    ApiError,
    ConfigError,
    DocumentNotFoundError,
    EmptyAnswerError,
    EmptyResultError,
    FormatError,
    NotConfiguredError,
    StorageError,
    TransportError,
    UnsupportedFileError,
    WaliError,
)

logger = structlog.get_logger()

MAX_QUESTION_CHARS = 2000

# Status code per error family; the body is always {"success": false, "message": ...}
ERROR_STATUS = (
    (DocumentNotFoundError, 404),
    ((NotConfiguredError, ConfigError, UnsupportedFileError), 400),
    ((ApiError, TransportError, FormatError, EmptyResultError, EmptyAnswerError), 502),
    (StorageError, 500),
)


class ApiKeyRequest(BaseModel):
    api_key: str = Field(min_length=1)


class UploadDocumentRequest(BaseModel):
    name: str = Field(min_length=1)
    content: str
    file_type: Optional[str] = None


class FilePathRequest(BaseModel):
    file_path: str = Field(min_length=1)


class AskQuestionRequest(BaseModel):
    question: str = Field(min_length=1, max_length=MAX_QUESTION_CHARS)
    conversation_id: Optional[str] = None


def _state() -> AppState:
    return current_app.config["WALI_STATE"]


async def _body(model: type[BaseModel]) -> BaseModel:
    data = await request.get_json(silent=True)
    return model.model_validate(data if data is not None else {})


def create_app(state: Optional[AppState] = None) -> Quart:
    """Build the Quart application.

    Args:
        state: Application state to serve; created from disk on first start if omitted
    """
    app = Quart(__name__)
    app.config["WALI_STATE"] = state

    @app.before_serving
    async def open_state():
        if app.config["WALI_STATE"] is None:
            app.config["WALI_STATE"] = AppState.create()
            logger.info("app_state_created", **app.config["WALI_STATE"].get_stats())

    @app.errorhandler(ValidationError)
    async def invalid_request(error: ValidationError):
        logger.warning("invalid_request", errors=error.error_count())
        return jsonify({"success": False, "message": f"Invalid request: {error}"}), 400

    @app.errorhandler(WaliError)
    async def knowledge_base_error(error: WaliError):
        status = 500
        for error_types, code in ERROR_STATUS:
            if isinstance(error, error_types):
                status = code
                break
        logger.error(
            "command_failed",
            path=request.path,
            error=str(error),
            error_type=type(error).__name__,
        )
        return jsonify({"success": False, "message": str(error)}), status

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"success": False, "message": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"success": False, "message": "Internal server error"}), 500

    # Configuration

    @app.route("/api/config/api-key", methods=["POST"])
    async def set_api_key():
        body = await _body(ApiKeyRequest)
        _state().set_api_key(body.api_key)
        return jsonify({"success": True, "message": "API key saved"})

    @app.route("/api/config/api-key", methods=["GET"])
    async def get_api_key_status():
        return jsonify({"success": True, "configured": _state().has_api_key()})

    # Documents

    @app.route("/api/documents", methods=["POST"])
    async def upload_document():
        """Upload a document given inline.

        Expects JSON body:
        {
            "name": "display name",
            "content": "full text",
            "file_type": "txt"  // optional
        }
        """
        body = await _body(UploadDocumentRequest)
        result = await _state().upload_document(body.name, body.content, body.file_type)
        return jsonify({
            "success": True,
            "message": f"Document uploaded, split into {result.chunk_count} chunks",
            "document_id": result.document_id,
            "chunk_count": result.chunk_count,
        })

    @app.route("/api/documents/from-path", methods=["POST"])
    async def upload_document_from_path():
        body = await _body(FilePathRequest)
        result = await _state().upload_document_from_path(body.file_path)
        return jsonify({
            "success": True,
            "message": f"Document uploaded, split into {result.chunk_count} chunks",
            "document_id": result.document_id,
            "chunk_count": result.chunk_count,
        })

    # Files

    @app.route("/api/files/read", methods=["POST"])
    async def read_file_content():
        body = await _body(FilePathRequest)
        content = _state().read_file_content(body.file_path)
        return jsonify({"success": True, "content": content})

    @app.route("/api/files/info", methods=["POST"])
    async def get_file_info():
        body = await _body(FilePathRequest)
        name, size = _state().get_file_info(body.file_path)
        return jsonify({"success": True, "name": name, "size": size})

    @app.route("/api/documents", methods=["GET"])
    async def list_documents():
        return jsonify({"success": True, "documents": _state().list_documents()})

    @app.route("/api/documents/<document_id>", methods=["DELETE"])
    async def delete_document(document_id: str):
        await _state().delete_document(document_id)
        return jsonify({"success": True})

    # Questions and conversations

    @app.route("/api/ask", methods=["POST"])
    async def ask_question():
        """Answer a question from the uploaded documents.

        Expects JSON body:
        {
            "question": "user question",
            "conversation_id": "optional-id"  // creates new if not provided
        }

        Returns JSON:
        {
            "success": true,
            "answer": "...",
            "sources": ["document name", ...],
            "conversation_id": "id"
        }
        """
        body = await _body(AskQuestionRequest)
        answer = await _state().ask(body.question.strip(), body.conversation_id)
        return jsonify({
            "success": True,
            "answer": answer.answer,
            "sources": answer.sources,
            "conversation_id": answer.conversation_id,
        })

    @app.route("/api/conversations", methods=["GET"])
    async def list_conversations():
        return jsonify({"success": True, "conversations": _state().list_conversations()})

    @app.route("/api/conversations/<conversation_id>/messages", methods=["GET"])
    async def get_messages(conversation_id: str):
        return jsonify({"success": True, "messages": _state().get_messages(conversation_id)})

    @app.route("/api/conversations/<conversation_id>", methods=["DELETE"])
    async def delete_conversation(conversation_id: str):
        deleted = _state().delete_conversation(conversation_id)
        if not deleted:
            return jsonify({"success": False, "message": "Conversation not found"}), 404
        return jsonify({"success": True})

    # Health

    @app.route("/health/live")
    async def health_live():
        """Liveness probe - check if app is running."""
        return jsonify({"status": "alive"}), 200

    @app.route("/health/ready")
    async def health_ready():
        """Readiness probe - report whether an API key is configured."""
        stats = _state().get_stats()
        status_code = 200 if stats["configured"] else 503
        return jsonify({"status": "ready" if stats["configured"] else "unconfigured", **stats}), status_code

    return app


if __name__ == "__main__":
    config.configure_logging()
    create_app().run(host="127.0.0.1", port=5000, debug=False)
