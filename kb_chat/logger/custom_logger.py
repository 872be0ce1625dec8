import logging

from rich.console import Console
from rich.logging import RichHandler

# -------------------------------------------------
# Silence noisy libraries
# -------------------------------------------------
NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "urllib3": logging.WARNING,
    "faiss": logging.WARNING,
    "faiss.loader": logging.WARNING,
    "google_genai": logging.WARNING,
}


class CustomLogger:
    """
    Configures the root logger once with a Rich console handler and hands out
    named loggers for the project.
    """

    _configured = False

    def __init__(self, level: int = logging.INFO, name: str = "kb_chat"):
        self.level = level
        self.name = name

        if not CustomLogger._configured:
            self._configure()
            CustomLogger._configured = True

    def _configure(self) -> None:
        console = Console(force_terminal=True, color_system="truecolor")

        logging.basicConfig(
            level=self.level,
            format="%(message)s",  # Rich handles formatting
            datefmt="[%H:%M:%S]",
            handlers=[
                RichHandler(
                    console=console,
                    rich_tracebacks=True,
                    tracebacks_show_locals=False,
                    show_time=True,
                    show_level=True,
                    show_path=True,
                    log_time_format="%H:%M:%S.%f",
                )
            ],
        )

        logging.getLogger("uvicorn").setLevel(logging.INFO)
        logging.getLogger("uvicorn.error").setLevel(logging.INFO)
        for noisy, lvl in NOISY_LOGGERS.items():
            logging.getLogger(noisy).setLevel(lvl)

    def get_logger(self, name: str | None = None) -> logging.Logger:
        return logging.getLogger(name or self.name)
