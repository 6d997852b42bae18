"""
Test Service for the togglebox Python SDK

This HTTP server wraps ToggleBoxClient and exposes a standard interface
for the cross-SDK test harness to interact with.

Protocol:
- GET /  -> Health check
- POST / -> Execute command
- DELETE / -> Cleanup/shutdown
"""

import logging
import os
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from togglebox import (
    CacheConfig,
    StatsConfig,
    ToggleBoxClient,
    ToggleBoxConfig,
    ToggleBoxError,
)
from togglebox.models import EvaluationContext

logger = logging.getLogger("togglebox.test_service")

client: Optional[ToggleBoxClient] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    global client
    if client:
        await client.close()
        client = None

app = FastAPI(lifespan=lifespan)


def make_response(
    value: Optional[bool] = None,
    json_value: Optional[Any] = None,
    variation: Optional[dict] = None,
    flag: Optional[dict] = None,
    is_ready: Optional[bool] = None,
    cache_stats: Optional[dict] = None,
    stats: Optional[dict] = None,
    success: Optional[bool] = None,
    error: Optional[str] = None,
    message: Optional[str] = None,
) -> dict:
    resp: Dict[str, Any] = {}
    if value is not None:
        resp["value"] = value
    if json_value is not None:
        resp["jsonValue"] = json_value
    if variation is not None:
        resp["variation"] = variation
    if flag is not None:
        resp["flag"] = flag
    if is_ready is not None:
        resp["isReady"] = is_ready
    if cache_stats is not None:
        resp["cacheStats"] = cache_stats
    if stats is not None:
        resp["stats"] = stats
    if success is not None:
        resp["success"] = success
    if error is not None:
        resp["error"] = error
    if message is not None:
        resp["message"] = message
    return resp


def not_initialized() -> dict:
    return make_response(error="NotInitializedError", message="Client not initialized")


def build_context(cmd: dict) -> EvaluationContext:
    user_data = cmd.get("user") or {}
    return client.context(
        user_id=user_data.get("id"),
        country=user_data.get("country"),
        language=user_data.get("language"),
        attributes=user_data.get("attributes"),
    )


def build_config(config_data: dict) -> ToggleBoxConfig:
    return ToggleBoxConfig(
        platform=config_data.get("platform", "web"),
        environment=config_data.get("environment", "production"),
        api_url=config_data.get("apiUrl"),
        tenant_subdomain=config_data.get("tenantSubdomain"),
        api_key=config_data.get("apiKey"),
        config_version=config_data.get("configVersion", "stable"),
        timeout_ms=config_data.get("timeout", 5000),
        refresh_interval_ms=config_data.get("refreshInterval", 0),
        cache=CacheConfig(
            enabled=config_data.get("cacheEnabled", True),
            ttl_seconds=config_data.get("cacheTtl", 300),
        ),
        stats=StatsConfig(
            enabled=config_data.get("statsEnabled", True),
            batch_size=config_data.get("statsBatchSize", 20),
        ),
    )


async def handle_command(cmd: dict) -> dict:
    global client
    command = cmd.get("command")

    if command == "init":
        config_data = cmd.get("config")
        if not config_data:
            return make_response(error="ValidationError", message="config is required")

        if client:
            await client.close()
            client = None

        try:
            client = ToggleBoxClient(build_config(config_data))
            await client.init()
            return make_response(success=True)
        except ToggleBoxError as e:
            logger.warning(f"init failed: {e.message}")
            return make_response(error=type(e).__name__, message=e.message)

    if command == "close":
        if client:
            await client.close()
            client = None
        return make_response(success=True)

    if command == "getState":
        if not client:
            return make_response(is_ready=False)
        cache_stats = client.get_cache_stats()
        return make_response(
            is_ready=client.initialized,
            cache_stats={
                "hits": cache_stats.hits if cache_stats else 0,
                "misses": cache_stats.misses if cache_stats else 0,
            },
            stats=client.get_stats_info(),
        )

    if not client:
        return not_initialized()

    if command in ("isEnabled", "getFlag"):
        flag_key = cmd.get("flagKey")
        if not flag_key:
            return make_response(error="ValidationError", message="flagKey is required")
        default_value = cmd.get("defaultValue", False)
        if command == "isEnabled":
            return make_response(
                value=client.is_flag_enabled(flag_key, build_context(cmd), default_value)
            )
        result = client.get_flag(flag_key, build_context(cmd), default_value)
        return make_response(value=result.enabled, flag=result.to_dict())

    if command == "getVariant":
        experiment_key = cmd.get("experimentKey")
        if not experiment_key:
            return make_response(error="ValidationError", message="experimentKey is required")
        assignment = client.get_variant(experiment_key, build_context(cmd))
        return make_response(variation=assignment.to_dict() if assignment else {})

    if command == "getConfig":
        key = cmd.get("key")
        if not key:
            return make_response(json_value=client.get_all_configs())
        return make_response(json_value=client.get_config_value(key, cmd.get("defaultValue")))

    if command == "trackConversion":
        experiment_key = cmd.get("experimentKey")
        metric_name = cmd.get("metricName")
        if not experiment_key or not metric_name:
            return make_response(
                error="ValidationError", message="experimentKey and metricName are required"
            )
        client.track_conversion(experiment_key, metric_name, cmd.get("value"), build_context(cmd))
        return make_response(success=True)

    if command in ("flushStats", "checkConnection", "refresh"):
        try:
            if command == "flushStats":
                await client.flush_stats()
            elif command == "checkConnection":
                await client.check_connection()
            else:
                await client.refresh()
            return make_response(success=True)
        except ToggleBoxError as e:
            logger.warning(f"{command} failed: {e.message}")
            return make_response(success=False, error=type(e).__name__, message=e.message)

    if command == "clearCache":
        return make_response(success=client.clear_cache())

    return make_response(error="UnknownCommand", message=f"Unknown command: {command}")


@app.get("/")
async def health_check():
    return {"success": True}


@app.post("/")
async def execute_command(request: Request):
    try:
        cmd = await request.json()
    except ValueError as e:
        logger.warning(f"Rejected unparseable command: {e}")
        return JSONResponse(
            content=make_response(error="ParseError", message=str(e)),
            status_code=400,
        )
    result = await handle_command(cmd)
    return JSONResponse(content=result)


@app.delete("/")
async def cleanup():
    global client
    if client:
        await client.close()
        client = None
    return {"success": True}


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    port = int(os.getenv("PORT", "8007"))
    print(f"[togglebox-python test-service] Listening on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="warning")
