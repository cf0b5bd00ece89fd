"""
======================================
通知发送（Notification Emitter）
======================================

新就诊创建后，通知所有 checkerDoctor 角色的在线客户端。

投递链路：
    services.create_visit
        ↓ transaction.on_commit
    notify(scope, event)
        ↓ Celery
    tasks.publish_notification_task
        ↓
    Redis PUBLISH notifications:<role>
    Redis LPUSH  notifications:<role>:recent（保留最近 N 条，断线重连后补发）

【尽力而为】
notify 里的任何异常都只写日志，不会抛给调用方：
通知失败不能让已经提交的 Visit 回滚。
"""

import json
import logging

import redis
from django.conf import settings

logger = logging.getLogger(__name__)


# ========== Redis 连接 ==========
def get_redis_connection():
    """
    获取 Redis 连接
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        decode_responses=True  # 自动将字节转为字符串
    )


# ========== 频道命名 ==========
def channel_name(scope):
    return f"notifications:{scope}"


def history_key(scope):
    return f"notifications:{scope}:recent"


# ========== 发送 ==========
def notify(scope, event):
    """
    把 event 投递给 scope（角色名）下的所有订阅者

    参数:
        scope: 角色名，例如 "checkerDoctor"
        event: {"type": "new-visit", "payload": {...}}

    返回:
        True 表示已入队，False 表示失败（已记录日志）
    """
    from .tasks import publish_notification_task

    try:
        publish_notification_task.delay(scope, event)
        return True
    except Exception:
        logger.warning("Failed to enqueue %s notification for %s", event.get('type'), scope, exc_info=True)
        return False


def publish(scope, event):
    """
    真正写 Redis 的地方（在 Celery worker 里执行）

    返回:
        收到消息的在线订阅者数量
    """
    r = get_redis_connection()
    message = json.dumps(event, default=str)
    key = history_key(scope)
    pipe = r.pipeline()
    pipe.lpush(key, message)
    pipe.ltrim(key, 0, settings.NOTIFICATION_HISTORY - 1)
    pipe.publish(channel_name(scope), message)
    *_, receivers = pipe.execute()
    return receivers


# ========== 补发 ==========
def get_recent_notifications(scope, limit=None):
    """
    获取 scope 最近的通知（最新的在前）

    Redis 不可用时返回空列表，不影响主流程
    """
    limit = limit or settings.NOTIFICATION_HISTORY
    try:
        r = get_redis_connection()
        raw = r.lrange(history_key(scope), 0, limit - 1)
    except redis.RedisError:
        logger.warning("Could not read recent notifications for %s", scope, exc_info=True)
        return []
    return [json.loads(item) for item in raw]
