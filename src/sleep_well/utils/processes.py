import psutil
from loguru import logger


def kill_processes(process_names: list[str] | set[str], exclude_pids: set[int] | None = None) -> set[str]:
    """Kills running processes whose name is in process_names. Returns the names killed."""
    killed_processes = set()
    process_names_set = set(process_names)
    exclude_pids = exclude_pids or set()

    for proc in psutil.process_iter(["name"]):
        try:
            if proc.pid in exclude_pids:
                continue
            if proc.info["name"] in process_names_set:
                logger.info(f"Killing {proc.info['name']} (PID: {proc.pid})")
                proc.kill()
                killed_processes.add(proc.info["name"])
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(f"Not allowed to kill {proc.info['name']} (PID: {proc.pid})")
            continue

    return killed_processes
