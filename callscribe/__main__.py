"""Run the API server: python -m callscribe"""
import uvicorn

from callscribe.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("callscribe.main:app", host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
