"""
日志配置模块
所有模块的日志记录器都挂在 report_engine 包记录器下，由包记录器统一输出到文件和控制台
"""
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

ROOT_LOGGER = "report_engine"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class DetailedFormatter(logging.Formatter):
    """在日志末尾追加 extra_context 上下文"""

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        context = getattr(record, "extra_context", None)
        if context:
            lines = "\n".join(f"  {key}: {value}" for key, value in context.items())
            formatted += f"\n上下文信息:\n{lines}"
        return formatted


def _level(name: Optional[str]) -> int:
    return getattr(logging, (name or "INFO").upper(), logging.INFO)


def setup_logger(
    name: str = ROOT_LOGGER,
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    console_output: bool = True
) -> logging.Logger:
    """
    配置日志记录器（重复调用会替换已有处理器）

    Args:
        name: 日志记录器名称，默认为包记录器
        log_level: 日志级别，默认读取环境变量 LOG_LEVEL
        log_file: 日志文件路径，默认读取环境变量 LOG_FILE
        console_output: 是否同时输出到控制台

    Returns:
        配置好的日志记录器
    """
    level = _level(log_level or os.getenv("LOG_LEVEL"))
    log_file = log_file or os.getenv("LOG_FILE", "./logs/report_engine.log")

    log_dir = os.path.dirname(log_file)
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = DetailedFormatter(LOG_FORMAT, DATE_FORMAT)

    # 文件记录全部级别，控制台按配置级别
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    获取日志记录器

    report_engine.* 子记录器不单独挂处理器，首次使用时初始化包记录器
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        setup_logger(ROOT_LOGGER)
    return logging.getLogger(name)


def log_error_with_context(
    logger: logging.Logger,
    message: str,
    error: Exception,
    context: Optional[Dict[str, Any]] = None
):
    """
    记录带上下文的错误日志（包含异常堆栈）

    Args:
        logger: 日志记录器
        message: 错误消息
        error: 异常对象
        context: 额外的上下文信息（执行编号、组件ID等）
    """
    details = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.utcnow().isoformat(),
    }
    details.update(context or {})
    logger.error(
        f"{message}: {type(error).__name__}: {error}",
        exc_info=(type(error), error, error.__traceback__),
        extra={"extra_context": details}
    )


def log_sql_error(
    logger: logging.Logger,
    sql: str,
    data_source: Optional[str],
    error: Exception,
    parameters: Optional[Dict[str, Any]] = None
):
    """记录SQL数据源查询错误"""
    log_error_with_context(logger, "SQL执行失败", error, {
        "data_source": data_source,
        "sql": sql,
        "parameters": parameters,
    })


def log_dispatch_error(
    logger: logging.Logger,
    report_id: str,
    recipients: List[str],
    error: Exception,
    execution_id: Optional[str] = None
):
    """记录定时报表分发错误"""
    log_error_with_context(logger, "定时报表分发失败", error, {
        "report_id": report_id,
        "execution_id": execution_id,
        "recipients": ", ".join(recipients),
    })
