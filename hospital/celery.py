"""
======================================
Celery 应用配置
======================================

Celery 在这个项目里只负责一件事：把「新就诊」通知投递到 Redis 频道。
HTTP 请求只负责把任务放进队列，不等待投递结果。

文件位置说明：
- 必须和 settings.py 同级，文件名必须是 celery.py
"""

import os
from celery import Celery

# 告诉 Celery 去哪里找 Django 的设置（必须在创建应用之前设置）
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'hospital.settings')

app = Celery('hospital')

# 所有 Celery 相关配置都以 CELERY_ 开头，例如：CELERY_BROKER_URL
app.config_from_object('django.conf:settings', namespace='CELERY')

# 自动扫描 INSTALLED_APPS 中的 tasks.py
app.autodiscover_tasks()
