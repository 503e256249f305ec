#!/usr/bin/env python3
"""
邮件助手启动脚本
端口: 9999（可用 PORT 环境变量覆盖）
自动重载: 开启
"""

import subprocess
import sys
import os
from pathlib import Path
from mailassist.utils.logger import logger


def main():
    """启动FastAPI服务器"""
    port = os.getenv("PORT", "9999")
    logger.info("正在启动邮件助手服务器...")
    logger.info(f"端口: {port}")
    logger.info("自动重载: 已开启")
    logger.info("-" * 50)

    # 设置工作目录为项目根目录
    project_dir = Path(__file__).parent
    os.chdir(project_dir)

    cmd = [
        sys.executable, "-m", "uvicorn",
        "mailassist.main:app",
        "--host", "0.0.0.0",
        "--port", port,
        "--reload",
        "--reload-dir", str(project_dir / "mailassist")
    ]

    try:
        subprocess.run(cmd, check=True)
    except subprocess.CalledProcessError as e:
        logger.error(f"服务器启动失败: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("\n服务器已停止")
        sys.exit(0)


if __name__ == "__main__":
    main()
