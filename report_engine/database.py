"""
数据库初始化和连接管理
报表定义、模板和执行记录都保存在同一个数据库中
"""
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session as SQLAlchemySession, sessionmaker
from sqlalchemy.pool import QueuePool

from .models.base import Base
from .models import Report, ReportTemplate, ReportExecution  # noqa: F401  注册表结构
from .utils.logger import get_logger

logger = get_logger(__name__)


def default_database_url() -> str:
    """REPORT_DB_URL 优先；否则使用 REPORT_DB_PATH（默认 ./data/reports.db）下的SQLite"""
    url = os.getenv("REPORT_DB_URL")
    if url:
        return url
    db_path = Path(os.getenv("REPORT_DB_PATH", "./data/reports.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def _engine_options(db_url: str) -> Dict[str, Any]:
    if db_url.startswith("sqlite"):
        # 执行任务和SMTP发送在线程池中运行，连接需要跨线程使用
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": int(os.getenv("REPORT_DB_POOL_SIZE", "10")),
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


class Database:
    """数据库管理类"""

    def __init__(self, db_url: Optional[str] = None):
        """
        Args:
            db_url: SQLAlchemy 连接URL，为None时从环境变量读取
        """
        self.url = db_url or default_database_url()
        self.engine = create_engine(self.url, echo=False, **_engine_options(self.url))
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False
        )

    def create_tables(self):
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[SQLAlchemySession, None, None]:
        """
        获取数据库会话：正常退出时提交，出现异常时回滚并继续抛出
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# 全局数据库实例
_db_instance = None


def get_database() -> Database:
    """获取全局数据库实例"""
    global _db_instance
    if _db_instance is None:
        _db_instance = Database()
    return _db_instance


def set_database(database: Database):
    """替换全局数据库实例（测试和嵌入式部署使用）"""
    global _db_instance
    _db_instance = database


def init_database():
    """创建所有表"""
    db = get_database()
    db.create_tables()
    logger.info(f"数据库初始化完成: {db.engine.url.render_as_string(hide_password=True)}")
