# feedsync/utils/logger.py
import os, sys, time

LEVELS = {"ERROR": 40, "WARN": 30, "INFO": 20, "DEBUG": 10, "NONE": 100}
LOG_LEVEL = LEVELS.get(os.getenv("LOG_LEVEL", "INFO").upper(), 20)

# celery workers prefix every line with the process name so interleaved
# output from the pool stays readable
_PROC = os.getenv("FEEDSYNC_PROC_NAME", "")

def _ts():
    return time.strftime("%H:%M:%S")

def enabled(level: str) -> bool:
    return LEVELS[level] >= LOG_LEVEL

def log(level: str, msg: str):
    if not enabled(level):
        return
    proc = f"[{_PROC}]" if _PROC else ""
    print(f"[{_ts()}][{level}]{proc} {msg}",
          file=sys.stdout if LEVELS[level] < 40 else sys.stderr, flush=True)

def debug(msg): log("DEBUG", msg)
def info(msg):  log("INFO", msg)
def warn(msg):  log("WARN", msg)
def error(msg): log("ERROR", msg)

def exc(msg: str, e: BaseException):
    error(f"{msg}: {type(e).__name__}: {e}")
