from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("CARESYNC_HOST", "0.0.0.0")
    port = int(os.getenv("CARESYNC_PORT", "8080"))
    uvicorn.run("caresync.web_admin:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
