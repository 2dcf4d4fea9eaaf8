from __future__ import annotations

import uvicorn

from tenantforge.apps.api.main import create_app
from tenantforge.core.config import get_settings


def main() -> None:
    # Run the provisioning API with env-driven host/port for compose and local use.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
