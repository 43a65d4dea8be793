"""Run the chat service under uvicorn (``agent-hub`` console script)."""

from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("AGENT_HUB_HOST", "0.0.0.0")
    port = int(os.getenv("AGENT_HUB_PORT", "8000"))
    uvicorn.run(
        "agent_hub.app:create_app",
        factory=True,
        host=host,
        port=port,
    )


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
