"""Run the API server: ``python -m infra_wizard``.

Host and port come from ``INFRA_WIZARD_HOST`` / ``INFRA_WIZARD_PORT``;
everything else from :meth:`WizardConfig.from_env`.
"""
from __future__ import annotations

import os

import uvicorn

from infra_wizard.api import create_app
from infra_wizard.core.config import WizardConfig
from infra_wizard.utils.logging import configure_logging


def main() -> None:
    config = WizardConfig.from_env()
    configure_logging(config.log_level, json=config.json_logs)
    app = create_app(config)
    uvicorn.run(
        app,
        host=os.environ.get("INFRA_WIZARD_HOST", "127.0.0.1"),
        port=int(os.environ.get("INFRA_WIZARD_PORT", "3001")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
