"""日志工具：统一 logger 名称与输出格式。"""

from __future__ import annotations

import logging
from pathlib import Path

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(
    name: str = "backtest",
    level: int | str | None = None,
    log_file: str | Path | None = None,
) -> logging.Logger:
    """获取并初始化 logger。

    重复调用不会重复挂 handler（回测循环里会被频繁调用）。

    Parameters
    ----------
    name:
        logger 名称，例如 `backtest` / `optimize`。
    level:
        日志级别；为 None 时保持已有级别（首次初始化为 INFO）。
    log_file:
        可选的文件输出路径。
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(ch)
        logger.propagate = False
        if level is None:
            logger.setLevel(logging.INFO)
    if level is not None:
        logger.setLevel(level)
    if log_file is not None:
        path = Path(log_file)
        has_file = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve()
            for h in logger.handlers
        )
        if not has_file:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(path, encoding="utf-8")
            fh.setFormatter(logging.Formatter(_FORMAT))
            logger.addHandler(fh)
    return logger


def set_level(names: list[str], level: int | str) -> None:
    """批量调整 logger 级别（worker 进程里用于静音）。"""
    for name in names:
        setup_logger(name).setLevel(level)
