"""
SQLAlchemy ORM 基类定义

所有租户库中的表模型都继承自这个 Base 类，
建表时通过 Base.metadata.create_all() 一次性创建。
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """声明式基类"""
    pass
