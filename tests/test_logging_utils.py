from __future__ import annotations

import logging

from longzang.logging_utils import APP_LOGGER, Utf8AccessFormatter, build_uvicorn_log_config


def test_log_config_routes_app_logger_through_uvicorn_handler() -> None:
    config = build_uvicorn_log_config(debug=True)

    assert config["formatters"]["access"]["()"] == "longzang.logging_utils.Utf8AccessFormatter"
    assert config["loggers"][APP_LOGGER]["handlers"] == ["default"]
    assert config["loggers"][APP_LOGGER]["level"] == "DEBUG"
    assert build_uvicorn_log_config()["loggers"][APP_LOGGER]["level"] == "INFO"


def test_access_formatter_decodes_paths() -> None:
    formatter = Utf8AccessFormatter(fmt='%(client_addr)s "%(request_line)s" %(status_code)s', use_colors=False)
    record = logging.LogRecord(
        name="uvicorn.access",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg='%s - "%s %s HTTP/%s" %d',
        args=("127.0.0.1:5000", "GET", "/api/scripture/1/txt?title=%E5%8D%B7", "1.1", 200),
        exc_info=None,
    )

    assert "title=卷" in formatter.format(record)
