import uvicorn
from database_setup import get_engine, DatabaseManager


def initialize_database():
    """初始化数据库表结构与系统配置（如果尚未创建）"""
    print("正在检查数据库表结构...")
    engine = get_engine()
    with engine.connect() as conn:
        with conn.begin():
            db_manager = DatabaseManager(engine)
            db_manager.init_all_tables(conn)
    print("数据库表结构初始化完成。")


if __name__ == "__main__":
    # 初始化数据库表结构
    initialize_database()

    # 启动 FastAPI 应用
    print("启动账单台账 API...")
    uvicorn.run(
        "api_interface:app",
        host="0.0.0.0",
        port=8000,
        reload=True,  # 开启热重载（开发模式）
        log_level="info",
        access_log=True
    )
