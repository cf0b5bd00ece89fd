"""
======================================
Celery 自动加载
======================================

Django 启动时导入 Celery 应用，这样 @shared_task 才能绑定到它。
"""

from .celery import app as celery_app

__all__ = ('celery_app',)
