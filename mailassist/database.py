import os
from pathlib import Path
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

# 数据库连接地址，默认使用本地SQLite文件
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/mailassist.db")

connect_args = {}
engine_kwargs = {}
if DATABASE_URL.startswith("sqlite"):
    # SQLite 需要允许跨线程访问（后台任务在其他线程执行）
    connect_args["check_same_thread"] = False
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        # 内存数据库必须共享同一个连接
        engine_kwargs["poolclass"] = StaticPool
    elif DATABASE_URL.startswith("sqlite:///./"):
        Path(DATABASE_URL.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)

engine = create_engine(DATABASE_URL, connect_args=connect_args, **engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
