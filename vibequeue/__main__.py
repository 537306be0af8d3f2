import uvicorn

from vibequeue.core.config import settings


def main() -> None:
    uvicorn.run("vibequeue.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
