"""辅助函数模块。

提供文件路径相关的小工具：
- ensure_dir: 确保目录存在
- safe_filename: 将任意字符串转换为安全文件名
"""

import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def ensure_dir(path: Path) -> Path:
    """确保目录存在（不存在则递归创建）。

    Args:
        path: 目录路径

    Returns:
        同一个 Path 对象，便于链式使用
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: str) -> str:
    """将字符串转换为安全的文件名。"""
    return _UNSAFE_CHARS.sub("_", name).strip() or "_"
