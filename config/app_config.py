# config/app_config.py - Backend configuration

import os
from types import SimpleNamespace

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


appConfig = SimpleNamespace(
    e2b=SimpleNamespace(
        apiKey=os.getenv("E2B_API_KEY"),
        timeoutMinutes=_env_int("SANDBOX_TIMEOUT_MINUTES", 30),
        vitePort=5173,
        viteStartupDelay=7000,  # ms
        cssRebuildDelay=2000,  # ms
    ),

    sandbox=SimpleNamespace(
        appRoot="/home/user/app",
        healthCheckIntervalSeconds=_env_int("HEALTH_CHECK_INTERVAL_SECONDS", 300),
        restartCooldownSeconds=5,
        restartSettleSeconds=3,
        allowedHost=".e2b.app",
        devServerLog="/tmp/vite.log",
        devServerPidFile="/tmp/vite-process.pid",
        logTailLines=100,
    ),

    apply=SimpleNamespace(
        commandTimeoutSeconds=60,
        saveDelaySeconds=3,
        # Files the model must never regenerate
        skippedFiles=[
            "tailwind.config.js",
            "vite.config.js",
            "package.json",
            "package-lock.json",
            "tsconfig.json",
            "postcss.config.js",
        ],
        topLevelFiles=["index.html"],
    ),

    packages=SimpleNamespace(
        installFlags=["--legacy-peer-deps"],
        installTimeoutSeconds=300,
        successSentinel="✓ Dependencies installed successfully",
    ),

    projectStore=SimpleNamespace(
        baseUrl=os.getenv("PROJECT_STORE_URL", "http://localhost:3000/api/v1"),
        token=os.getenv("PROJECT_STORE_TOKEN"),
        timeoutSeconds=30.0,
        autoSaveDelaySeconds=2.0,
        ignoredDirs=["node_modules", ".git", "dist", "build", ".vite", ".next"],
        ignoredFiles=[".DS_Store", "package-lock.json", "yarn.lock", "pnpm-lock.yaml"],
    ),

    database=SimpleNamespace(
        path=os.getenv("SANDBOX_DB_PATH", ""),
    ),
)
