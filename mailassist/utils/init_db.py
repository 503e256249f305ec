"""
数据库初始化工具
用于初次部署时创建表结构，或检查、重建现有数据库

用法: python -m mailassist.utils.init_db {init,check,reset}
"""
from sqlalchemy import inspect

from mailassist.database import engine, Base
from mailassist import model  # noqa: F401
from mailassist.utils.logger import get_logger

logger = get_logger("init_db")


def init_database():
    """创建所有缺失的表，已存在的表保持不变"""
    try:
        logger.info("开始初始化数据库...")
        Base.metadata.create_all(bind=engine)

        tables = Base.metadata.tables.keys()
        logger.info(f"已创建 {len(tables)} 个表:")
        for table_name in tables:
            logger.info(f"  - {table_name}")
        logger.info("数据库初始化完成！")
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}", exc_info=True)
        raise


def check_database() -> bool:
    """检查数据库连接，以及模型中的表是否都已存在"""
    try:
        logger.info("检查数据库连接...")
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())

        if not tables:
            logger.warning("数据库中没有表，请先运行初始化")
            return False

        missing = [name for name in Base.metadata.tables.keys() if name not in tables]
        for table_name in sorted(tables):
            columns = inspector.get_columns(table_name)
            logger.info(f"  - {table_name} ({len(columns)} 个字段)")

        if missing:
            logger.warning(f"缺少 {len(missing)} 个表: {', '.join(missing)}")
            return False

        logger.info(f"数据库连接正常，共有 {len(tables)} 个表")
        return True
    except Exception as e:
        logger.error(f"数据库检查失败: {e}", exc_info=True)
        return False


def reset_database(confirm: bool = False):
    """删除并重建所有表，会清空全部数据"""
    if not confirm:
        response = input("是否要重新创建数据库？这将删除所有现有数据！(yes/no): ")
        if response.lower() != "yes":
            logger.info("取消数据库重建")
            return
    Base.metadata.drop_all(bind=engine)
    logger.info("已删除所有表")
    init_database()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="数据库初始化工具")
    parser.add_argument(
        "action",
        choices=["init", "check", "reset"],
        help="操作: init=初始化数据库, check=检查数据库, reset=重建数据库"
    )
    parser.add_argument("--yes", action="store_true", help="reset 时跳过确认")

    args = parser.parse_args()

    if args.action == "init":
        init_database()
    elif args.action == "check":
        check_database()
    elif args.action == "reset":
        reset_database(confirm=args.yes)
