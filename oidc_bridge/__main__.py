import uvicorn

from oidc_bridge.shared.core.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("oidc_bridge.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
