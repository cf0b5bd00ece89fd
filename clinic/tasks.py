"""
======================================
Celery 异步任务定义
======================================

目前只有一个任务：把通知写进 Redis。

重要概念：
- @shared_task: 让任务可以被任何 Celery 应用使用（比 @app.task 更灵活）
- autoretry_for: Redis 短暂不可用时自动重试
- retry_backoff: 指数退避，每次重试等待时间翻倍
"""

import logging

import redis
from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    autoretry_for=(redis.RedisError,),  # 只有 Redis 错误才重试
    retry_kwargs={'max_retries': 3},    # 最多重试 3 次
    retry_backoff=True,                 # 启用指数退避
    retry_backoff_max=60,               # 通知过时就没意义了，最多等 1 分钟
    retry_jitter=True,                  # 添加随机抖动，避免重试风暴
)
def publish_notification_task(scope, event):
    """
    发布一条通知到 notifications:<scope>

    调用方式：
        publish_notification_task.delay("checkerDoctor", {"type": "new-visit", "payload": {...}})
    """
    # 导入放在函数内部，避免循环导入问题
    from .notifications import publish

    receivers = publish(scope, event)
    logger.info("Published %s to %s (%s live subscribers)", event.get('type'), scope, receivers)
    return {'scope': scope, 'type': event.get('type'), 'receivers': receivers}
