"""
行数据解析边界：无法通过模型校验的记录记日志后隔离，不向业务层传递
"""

import logging
from typing import Callable, Iterable, List, TypeVar

from pydantic import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def parse_rows(rows: Iterable, to_model: Callable[..., T], collection: str) -> List[T]:
    """逐行转换为模型，跳过格式异常的行"""
    models: List[T] = []
    for row in rows:
        try:
            models.append(to_model(row))
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning(f"{collection} 中存在格式异常的记录，已隔离: {e}")
    return models
