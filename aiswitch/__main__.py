"""Run the gateway with ``python -m aiswitch``."""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "aiswitch.app:app",
        host=os.getenv("AISWITCH_HOST", "0.0.0.0"),
        port=int(os.getenv("AISWITCH_PORT", "3400")),
    )


if __name__ == "__main__":
    main()
