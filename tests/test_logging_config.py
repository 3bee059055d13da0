import logging

from buildrail.utils.logging_config import ColoredFormatter, setup_logging


def _record(level):
    return logging.LogRecord("buildrail.test", level, __file__, 1, "hello %s", ("world",), None)


def test_colored_formatter_wraps_level_color():
    text = ColoredFormatter(use_color=True).format(_record(logging.ERROR))
    assert text.startswith(ColoredFormatter.red)
    assert text.endswith(ColoredFormatter.reset)
    assert "hello world" in text


def test_plain_formatter_without_color():
    text = ColoredFormatter(use_color=False).format(_record(logging.INFO))
    assert "\x1b[" not in text
    assert "| INFO     | buildrail.test:1 - hello world" in text


def test_setup_logging_writes_daily_file(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        setup_logging(level=logging.INFO, log_dir=str(tmp_path))
        logging.getLogger("buildrail.test").info("run admitted")
        for handler in root.handlers:
            handler.flush()

        files = list(tmp_path.glob("buildrail_*.log"))
        assert len(files) == 1
        assert "run admitted" in files[0].read_text()
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)
