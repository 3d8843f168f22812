"""Application entrypoint (HTTP/HTTPS listeners + message streams)."""

import asyncio
import sys

from .api.routes import router
from .auth.tokens import JwtTokenValidator
from .config.settings import get_settings
from .domain.errors import StartupError
from .lifespan import lifespan_manager
from .server import init_server


async def main() -> None:
    """Main application entrypoint."""
    settings = get_settings()
    if not settings.jwt_secret:
        raise StartupError("APISERVER_JWT_SECRET is required")

    token_validator = JwtTokenValidator(
        settings.jwt_secret,
        algorithms=settings.jwt_algorithms,
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )

    async with lifespan_manager() as shutdown_handler:
        await init_server([router], token_validator, shutdown_handler, settings)
        await shutdown_handler.wait()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutting down...")
        sys.exit(0)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)
