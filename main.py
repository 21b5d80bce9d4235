from __future__ import annotations

import logging

from meridian.app.api.app import create_app
from meridian.core.config import load_app_config

config = load_app_config()
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = create_app(config)
