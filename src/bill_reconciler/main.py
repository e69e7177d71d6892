import os

import uvicorn

from bill_reconciler.app import app
from bill_reconciler.logger import get_logging_config


def main() -> None:
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=get_logging_config(),
    )


if __name__ == "__main__":
    main()
