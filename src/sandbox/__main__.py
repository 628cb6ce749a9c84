from __future__ import annotations

import uvicorn

from .api.app import create_app
from .logging import setup_logging
from .services.dispatcher import Dispatcher
from .settings import load_settings


def main() -> None:
    s = load_settings()
    log = setup_logging(s.log_level, json=s.log_json)
    log.info("sandbox_boot", host=s.host, port=s.port, pool_size=s.pool_size, strategy=s.iso_strategy)
    app = create_app(Dispatcher(s))
    uvicorn.run(app, host=s.host, port=s.port, log_config=None)


if __name__ == "__main__":
    main()
