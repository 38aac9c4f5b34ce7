"""数据库引擎与请求级会话。"""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from tsp_api.core.config import get_settings


def build_engine(database_url: str) -> Engine:
    """按连接地址创建引擎，SQLite 需要放开跨线程访问。"""
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        # 同步路由运行在线程池中，同一连接会被不同线程复用。
        connect_args["check_same_thread"] = False
    return create_engine(database_url, future=True, pool_pre_ping=True, connect_args=connect_args)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)


def get_db() -> Generator[Session, None, None]:
    """为每个请求提供独立数据库会话，异常时回滚未提交的变更。"""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
