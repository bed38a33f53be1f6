"""
Health check and monitoring endpoints.
"""
import os
import platform
import socket
import sys
import time
from datetime import datetime
import psutil
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from wagate import __version__
from wagate.logger import get_logger

logger = get_logger(__name__)
start_time = time.time()


async def health_check(request: Request) -> JSONResponse:
    """GET /health — Liveness only; never touches the database or the bridge."""
    return JSONResponse(
        {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": int(time.time() - start_time),
        }
    )


async def _check_database(request: Request) -> str:
    db = getattr(request.app.state, "database", None)
    if db is None:
        return "not initialized"
    try:
        await run_in_threadpool(db.count_instances)
    except Exception as e:
        logger.warning(f"Readiness: database check failed: {e}")
        return f"error: {e}"
    return "ok"


def _check_device_manager(request: Request) -> str:
    manager = getattr(request.app.state, "device_manager", None)
    return "ok" if manager is not None else "not initialized"


async def readiness_check(request: Request) -> JSONResponse:
    """
    GET /ready — 200 once the tenant store and the device manager are usable,
    503 otherwise. Each dependency is reported under `checks`.
    """
    checks = {
        "database": await _check_database(request),
        "device_manager": _check_device_manager(request),
    }
    ready = all(result == "ok" for result in checks.values())

    return JSONResponse(
        {
            "status": "ready" if ready else "not ready",
            "checks": checks,
            "timestamp": datetime.now().isoformat(),
        },
        status_code=200 if ready else 503,
    )


def _collect_system_info() -> dict:
    """Snapshot of host resources. Blocks for ~0.1s while sampling CPU."""
    cpu_percents = psutil.cpu_percent(interval=0.1, percpu=True)
    memory = psutil.virtual_memory()
    freq = psutil.cpu_freq()

    network = []
    stats = psutil.net_if_stats()
    for iface, counters in psutil.net_io_counters(pernic=True).items():
        network.append({
            "iface": iface,
            "operstate": "up" if stats.get(iface) and stats[iface].isup else "down",
            "rx_bytes": counters.bytes_recv,
            "tx_bytes": counters.bytes_sent,
        })

    statuses: dict[str, int] = {}
    procs = []
    for proc in psutil.process_iter(["pid", "name", "cpu_percent", "memory_percent", "status"]):
        info = proc.info
        statuses[info.get("status") or "unknown"] = statuses.get(info.get("status") or "unknown", 0) + 1
        procs.append(info)
    procs.sort(key=lambda p: p.get("cpu_percent") or 0.0, reverse=True)

    load_average = list(os.getloadavg()) if hasattr(os, "getloadavg") else []

    return {
        "timestamp": datetime.now().isoformat(),
        "uptime": int(time.time() - psutil.boot_time()),
        "hostname": socket.gethostname(),
        "platform": sys.platform,
        "arch": platform.machine(),
        "cpu": {
            "brand": platform.processor(),
            "cores": psutil.cpu_count(),
            "physicalCores": psutil.cpu_count(logical=False),
            "speed": freq.current if freq else None,
            "currentLoad": sum(cpu_percents) / len(cpu_percents) if cpu_percents else 0.0,
            "cpus": [{"load": load} for load in cpu_percents],
        },
        "memory": {
            "total": memory.total,
            "free": memory.free,
            "used": memory.used,
            "available": memory.available,
            "usagePercent": f"{memory.used / memory.total * 100:.2f}",
        },
        "network": network,
        "processes": {
            "all": len(procs),
            "running": statuses.get(psutil.STATUS_RUNNING, 0),
            "sleeping": statuses.get(psutil.STATUS_SLEEPING, 0),
            "list": [
                {
                    "pid": p.get("pid"),
                    "name": p.get("name"),
                    "cpu": p.get("cpu_percent"),
                    "mem": p.get("memory_percent"),
                }
                for p in procs[:10]
            ],
        },
        "loadAverage": load_average,
        "freemem": memory.available,
        "totalmem": memory.total,
    }


async def get_system_info(request: Request) -> JSONResponse:
    """
    GET /api/system — Host CPU, memory, network and top processes.
    """
    try:
        info = await run_in_threadpool(_collect_system_info)
        manager = getattr(request.app.state, "device_manager", None)
        info["gateway"] = {
            "version": __version__,
            "uptime_seconds": int(time.time() - start_time),
            "devices": len(manager.get_all_statuses()) if manager else 0,
            "connected": manager.connected_count if manager else 0,
        }
        return JSONResponse(info)

    except Exception as e:
        logger.error(f"Error getting system info: {e}")
        return JSONResponse(
            {"error": "Failed to fetch system information", "details": str(e)},
            status_code=500,
        )
