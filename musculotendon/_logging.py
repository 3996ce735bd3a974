import logging
import os
import re

from rich.highlighter import ReprHighlighter
from rich.logging import RichHandler
from rich.text import Text

from musculotendon.config import load_logging_config


LOG_LEVEL_ENV_VAR_NAME = "MUSCULOTENDON_LOG_LEVEL"


class BacktickPathHighlighter(ReprHighlighter):
    # Detect a delimited chunk: `…`
    _DELIM = re.compile(r"`(?P<body>[^`]+)`")
    # What "looks like a path" inside the delimiter
    _PATH = re.compile(r"^(?:~|/|[A-Za-z]:\\)[\w.\- /\\]+$")

    def highlight(self, text: Text) -> None:
        super().highlight(text)

        s = text.plain
        for m in self._DELIM.finditer(s):
            body = m.group("body").strip()
            if self._PATH.match(body):
                text.stylize("repr.path", m.start("body"), m.end("body"))


def _console_handler_pred(h: logging.Handler) -> bool:
    return isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)


def _remove_handlers(logger: logging.Logger, *, predicate) -> None:
    """Remove and close all handlers on `logger` for which `predicate(handler)` is True."""
    for h in list(logger.handlers):
        if predicate(h):
            logger.removeHandler(h)
            h.close()


def enable_logging_handlers(
    console_level: int | str | None = None,
    pkg_console_levels: dict[str, int] | None = None,
) -> RichHandler:
    """Attach a Rich console handler to the root logger.

    Levels default to the ``MUSCULOTENDON_LOG_LEVEL`` environment variable,
    then to the ``logging`` section of the YAML config.

    Returns:
        The console handler attached to the root logger.
    """
    cfg = load_logging_config()
    console_lvl = console_level or os.environ.get(LOG_LEVEL_ENV_VAR_NAME) or cfg["console_level"]
    if isinstance(console_lvl, str):
        console_lvl = logging.getLevelNamesMapping()[console_lvl.strip().upper()]
    pkg_console_lvls: dict[str, int] = pkg_console_levels or cfg.get("pkg_console_levels") or {}
    console_fmt = logging.Formatter(cfg.get("console_format_str", "%(message)s"))

    root = logging.getLogger()
    root.setLevel(min([console_lvl, *pkg_console_lvls.values()]))

    _remove_handlers(root, predicate=_console_handler_pred)
    console_h = RichHandler(level=console_lvl, highlighter=BacktickPathHighlighter())
    console_h.setFormatter(console_fmt)
    root.addHandler(console_h)

    # Per-package console overrides; still propagate to root
    for pkg, lvl in pkg_console_lvls.items():
        lg = logging.getLogger(pkg)
        _remove_handlers(lg, predicate=_console_handler_pred)
        sh = RichHandler(level=lvl, highlighter=BacktickPathHighlighter())
        sh.setFormatter(console_fmt)
        lg.addHandler(sh)
        lg.setLevel(lvl)
        lg.propagate = True

    logging.captureWarnings(True)
    return console_h
