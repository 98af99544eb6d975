"""Management API and request-routing hook (aiohttp)."""

from __future__ import annotations

import json
import math
import time
from typing import Any

import structlog
from aiohttp import web

from tenantgate.domains.errors import DomainError, InvalidInput
from tenantgate.domains.manager import DomainManager
from tenantgate.observability.metrics import generate_metrics, get_content_type

logger = structlog.get_logger()

MANAGER_KEY = web.AppKey("manager", DomainManager)
TENANT_KEY = "tenant_id"


def _error_response(error: DomainError) -> web.Response:
    headers = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    return web.json_response(error.to_dict(), status=error.status_code, headers=headers)


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Render DomainError as a JSON error body with the error's status."""
    try:
        return await handler(request)
    except DomainError as e:
        if e.status_code >= 500:
            logger.warning("Domain operation failed", path=request.path, code=e.code, error=e.message)
        return _error_response(e)


@web.middleware
async def tenant_resolution_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Resolve the Host header to a tenant and record the served request."""
    manager = request.app[MANAGER_KEY]
    host = request.headers.get("Host", "")
    tenant_id = await manager.resolve_tenant(host) if host else None
    request[TENANT_KEY] = tenant_id
    if tenant_id is None:
        return await handler(request)

    start = time.perf_counter()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    except DomainError as e:
        status = e.status_code
        raise
    finally:
        await manager.record_request(
            host,
            status,
            round((time.perf_counter() - start) * 1000, 1),
            visitor=request.remote,
        )


class DomainApiHandler:
    """HTTP handlers for the domain management operations."""

    def __init__(self, manager: DomainManager, metrics_enabled: bool = True) -> None:
        self.manager = manager
        self.metrics_enabled = metrics_enabled

    def register_routes(self, app: web.Application) -> None:
        """Register API routes on an aiohttp application."""
        base = "/api/tenants/{tenant}/domains"
        app.router.add_post(base, self.handle_add)
        app.router.add_get(base, self.handle_list)
        app.router.add_get(base + "/{id}", self.handle_get)
        app.router.add_patch(base + "/{id}", self.handle_update)
        app.router.add_delete(base + "/{id}", self.handle_remove)
        app.router.add_post(base + "/{id}/verify", self.handle_verify)
        app.router.add_post(base + "/{id}/verify/email", self.handle_confirm_email)
        app.router.add_get(base + "/{id}/setup", self.handle_setup)
        app.router.add_post(base + "/{id}/certificate/renew", self.handle_renew)
        app.router.add_get(base + "/{id}/health", self.handle_health)
        app.router.add_get(base + "/{id}/analytics", self.handle_analytics)
        app.router.add_post(base + "/{id}/test", self.handle_test)
        app.router.add_get("/resolve", self.handle_resolve)
        app.router.add_get("/health", self.handle_liveness)
        if self.metrics_enabled:
            app.router.add_get("/metrics", self.handle_metrics)

    @staticmethod
    async def _read_json(request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise InvalidInput("Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise InvalidInput("Request body must be a JSON object")
        return body

    @staticmethod
    def _actor(request: web.Request) -> str | None:
        return request.headers.get("X-Actor")

    @staticmethod
    def _client_ip(request: web.Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.remote or "unknown"

    async def handle_add(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        if "domain" not in body:
            raise InvalidInput("domain is required", details={"field": "domain"})
        metadata = dict(body.get("metadata") or {})
        metadata.setdefault("source_ip", self._client_ip(request))
        metadata.setdefault("user_agent", request.headers.get("User-Agent", ""))
        metadata.setdefault("source", "api")

        result = await self.manager.add_domain(
            request.match_info["tenant"],
            body["domain"],
            kind=body.get("kind", "custom"),
            certificate_type=body.get("certificate_type", "managed"),
            verification_method=body.get("verification_method"),
            auto_renew=bool(body.get("auto_renew", True)),
            force_https=bool(body.get("force_https", True)),
            custom_certificate=body.get("custom_certificate"),
            actor=self._actor(request),
            metadata=metadata,
        )
        return web.json_response(result, status=201)

    async def handle_list(self, request: web.Request) -> web.Response:
        return web.json_response(await self.manager.list_domains(request.match_info["tenant"]))

    async def handle_get(self, request: web.Request) -> web.Response:
        return web.json_response(
            await self.manager.get_domain(request.match_info["tenant"], request.match_info["id"])
        )

    async def handle_setup(self, request: web.Request) -> web.Response:
        return web.json_response(
            await self.manager.get_setup_instructions(
                request.match_info["tenant"], request.match_info["id"]
            )
        )

    async def handle_verify(self, request: web.Request) -> web.Response:
        result = await self.manager.verify_domain(
            request.match_info["tenant"], request.match_info["id"], actor=self._actor(request)
        )
        return web.json_response(result)

    async def handle_confirm_email(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        result = await self.manager.confirm_email_verification(
            request.match_info["tenant"],
            request.match_info["id"],
            body.get("token", ""),
            actor=self._actor(request),
        )
        return web.json_response(result)

    async def handle_update(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        result = await self.manager.update_domain(
            request.match_info["tenant"], request.match_info["id"], body, actor=self._actor(request)
        )
        return web.json_response(result)

    async def handle_remove(self, request: web.Request) -> web.Response:
        result = await self.manager.remove_domain(
            request.match_info["tenant"], request.match_info["id"], actor=self._actor(request)
        )
        return web.json_response(result)

    async def handle_renew(self, request: web.Request) -> web.Response:
        result = await self.manager.renew_certificate(
            request.match_info["tenant"], request.match_info["id"], actor=self._actor(request)
        )
        return web.json_response(result)

    async def handle_health(self, request: web.Request) -> web.Response:
        include_http = request.query.get("http", "true").lower() != "false"
        result = await self.manager.get_health(
            request.match_info["tenant"], request.match_info["id"], include_http=include_http
        )
        return web.json_response(result)

    async def handle_analytics(self, request: web.Request) -> web.Response:
        result = await self.manager.get_analytics(
            request.match_info["tenant"],
            request.match_info["id"],
            timeframe=request.query.get("timeframe", "7d"),
        )
        return web.json_response(result)

    async def handle_test(self, request: web.Request) -> web.Response:
        result = await self.manager.test_domain(request.match_info["tenant"], request.match_info["id"])
        return web.json_response(result)

    async def handle_resolve(self, request: web.Request) -> web.Response:
        host = request.query.get("host", "")
        if not host:
            raise InvalidInput("host is required", details={"field": "host"})
        tenant_id = await self.manager.resolve_tenant(host)
        return web.json_response({"host": host, "tenant_id": tenant_id, "found": tenant_id is not None})

    async def handle_liveness(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_metrics(), content_type=get_content_type())


def create_app(
    manager: DomainManager,
    metrics_enabled: bool = True,
    scheduler_enabled: bool = False,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        manager: The domain manager serving the API.
        metrics_enabled: Expose /metrics.
        scheduler_enabled: Run the background scheduler while the app runs.
    """
    app = web.Application(middlewares=[error_middleware, tenant_resolution_middleware])
    app[MANAGER_KEY] = manager
    DomainApiHandler(manager, metrics_enabled=metrics_enabled).register_routes(app)

    if scheduler_enabled and manager.scheduler is not None:

        async def _start_scheduler(app: web.Application) -> None:
            manager.scheduler.start()

        async def _stop_scheduler(app: web.Application) -> None:
            await manager.scheduler.stop()

        app.on_startup.append(_start_scheduler)
        app.on_cleanup.append(_stop_scheduler)

    return app


def _parse_bind(bind: str) -> tuple[str, int]:
    """Parse bind address into host and port."""
    if ":" in bind:
        host, port = bind.rsplit(":", 1)
        return host, int(port)
    return bind, 8080


class ApiServer:
    """Runs the management API on a TCP site."""

    def __init__(
        self,
        manager: DomainManager,
        bind: str = "0.0.0.0:8080",
        metrics_enabled: bool = True,
        scheduler_enabled: bool = True,
    ) -> None:
        self.manager = manager
        self.bind = bind
        self.app = create_app(manager, metrics_enabled, scheduler_enabled)
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        host, port = _parse_bind(self.bind)
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Management API started", host=host, port=port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Management API stopped")
