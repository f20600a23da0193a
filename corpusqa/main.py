"""Quart JSON API for corpusqa."""
import asyncio
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as RequestValidationError
from quart import Quart, jsonify, request

from corpusqa.errors import (
    AlreadyExistsError,
    CorpusQAError,
    EmptyCorpusError,
    IndexNotAvailableError,
    NotFoundError,
    UnsupportedInputError,
    UpstreamError,
    ValidationError,
)
from corpusqa.rag.retriever import serialize_results
from corpusqa.service import CorpusService

logger = structlog.get_logger()

# Order matters: subclasses before their bases
ERROR_STATUS = (
    (IndexNotAvailableError, 409),
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ValidationError, 400),
    (UnsupportedInputError, 415),
    (EmptyCorpusError, 422),
    (UpstreamError, 502),
)


class CreateModelRequest(BaseModel):
    name: str


class IngestRequest(BaseModel):
    path: str = Field(min_length=1)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=2000)
    top_k: Optional[int] = Field(default=None, gt=0)


class AskRequest(SearchRequest):
    model: Optional[str] = None


def status_for(error: CorpusQAError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def _json_body() -> dict:
    data = await request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(service: CorpusService) -> Quart:
    """Build the HTTP application around a service instance.

    Args:
        service: Service shared by every request

    Returns:
        Configured Quart app
    """
    app = Quart(__name__)

    @app.errorhandler(CorpusQAError)
    async def handle_domain_error(error: CorpusQAError):
        status = status_for(error)
        log = logger.error if status >= 500 else logger.warning
        log(
            "request_failed",
            path=request.path,
            status=status,
            error=str(error),
            error_type=type(error).__name__,
        )
        return jsonify({"error": str(error), "error_type": type(error).__name__}), status

    @app.errorhandler(RequestValidationError)
    async def handle_request_validation(error: RequestValidationError):
        logger.warning("invalid_request_body", path=request.path, error_count=error.error_count())
        details = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in error.errors()
        ]
        return jsonify({"error": "Invalid request body", "details": details}), 400

    @app.errorhandler(404)
    async def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    async def internal_error(error):
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/health/live")
    async def health_live():
        """Liveness check - report that the app is running."""
        return jsonify({"status": "alive"}), 200

    @app.route("/health/ready")
    async def health_ready():
        """Readiness check - verify the generation backend and its model."""
        client = getattr(service.generator, "client", None)
        if client is None:
            return jsonify({"status": "healthy", "backend": "mock"}), 200

        checks = {"status": "healthy", "backend": "ollama", "models": False}
        try:
            models = await client.list_models()
        except UpstreamError as e:
            logger.error("health_check_failed", error=str(e))
            checks.update(status="unhealthy", error=str(e))
            return jsonify(checks), 503

        if service.generator.default_model in models:
            checks["models"] = True
            return jsonify(checks), 200

        checks.update(
            status="unhealthy",
            error=f"Missing chat model: {service.generator.default_model}",
        )
        return jsonify(checks), 503

    @app.route("/api/models", methods=["GET"])
    async def list_models():
        return jsonify({"models": [m.to_dict() for m in service.list_models()]})

    @app.route("/api/models", methods=["POST"])
    async def create_model():
        body = CreateModelRequest.model_validate(await _json_body())
        meta = service.create_model(body.name)
        return jsonify(meta.to_dict()), 201

    @app.route("/api/models/<name>", methods=["GET"])
    async def get_model(name: str):
        return jsonify(service.describe_model(name))

    @app.route("/api/models/<name>/ingest", methods=["POST"])
    async def ingest(name: str):
        body = IngestRequest.model_validate(await _json_body())
        path = service.check_ingest_path(body.path)
        stats = await asyncio.to_thread(service.ingest, name, path)
        return jsonify({"model": name, "stats": stats})

    @app.route("/api/models/<name>/build", methods=["POST"])
    async def build(name: str):
        stats = await service.build(name)
        return jsonify({"model": name, "stats": stats})

    @app.route("/api/models/<name>/search", methods=["POST"])
    async def search(name: str):
        body = SearchRequest.model_validate(await _json_body())
        results = await service.search(name, body.query, top_k=body.top_k)
        return jsonify({"results": serialize_results(results)})

    @app.route("/api/models/<name>/ask", methods=["POST"])
    async def ask(name: str):
        body = AskRequest.model_validate(await _json_body())
        logger.info(
            "ask_request_received",
            model=name,
            query_length=len(body.query),
            top_k=body.top_k,
        )
        result = await service.ask(
            name, body.query, top_k=body.top_k, generation_model=body.model
        )
        return jsonify(result.to_dict())

    return app


if __name__ == "__main__":
    # For development - use `corpusqa serve` or hypercorn in production
    from corpusqa.config import Settings
    from corpusqa.logging_setup import configure_logging

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    create_app(CorpusService(settings)).run(host="0.0.0.0", port=5000, debug=True)
