from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

WORK_DIR = os.environ.get("HELIXFLOW_WORK_DIR", ".helixflow/work")
CACHE_DIR = os.environ.get("HELIXFLOW_CACHE_DIR", ".helixflow/cache")
MAX_WORKERS = int(os.environ["HELIXFLOW_MAX_WORKERS"]) if os.environ.get("HELIXFLOW_MAX_WORKERS") else None
CONTAINER_RUNTIME = os.environ.get("HELIXFLOW_CONTAINER_RUNTIME") or None
FILE_HASHING = os.environ.get("HELIXFLOW_FILE_HASHING", "stat")


@dataclass
class EngineConfig:
    work_dir: str = WORK_DIR
    cache_dir: Optional[str] = CACHE_DIR      # None disables call caching
    max_workers: Optional[int] = MAX_WORKERS
    max_cpu: Optional[int] = None
    max_memory: Optional[str] = None          # size string, e.g. "16G"
    enforce_memory: bool = False
    container_runtime: Optional[str] = CONTAINER_RUNTIME
    file_hashing: str = FILE_HASHING
    fail_fast: bool = False
