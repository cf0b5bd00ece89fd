"""
===============================================================================
Django 项目配置 (Settings)
===============================================================================

【配置来源】
-----------
所有和环境相关的值都从环境变量读取（docker-compose / .env 注入），
这里只给出开发环境的默认值。

【DRF 配置说明】
--------------
REST_FRAMEWORK 中的 EXCEPTION_HANDLER 指向
clinic.exceptions.custom_exception_handler：
- 所有 @api_view 视图抛出的异常都会经过它
- 统一成 {"success": false, "message": ..., "errors": [...]} 格式

【测试】
-------
pytest 使用 hospital.settings_test（SQLite 内存库 + Celery eager），
见 pyproject.toml 的 [tool.pytest.ini_options]。
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
DEBUG = os.getenv('DEBUG', 'true').lower() == 'true'
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', '*').split(',')

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.staticfiles',
    # ========== DRF ==========
    # 提供：@api_view, Response, exception_handler, TokenAuthentication
    'rest_framework',
    'rest_framework.authtoken',
    'clinic',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
]

ROOT_URLCONF = 'hospital.urls'

TEMPLATES = [{
    'BACKEND': 'django.template.backends.django.DjangoTemplates',
    'DIRS': [],
    'APP_DIRS': True,
    'OPTIONS': {'context_processors': [
        'django.template.context_processors.debug',
        'django.template.context_processors.request',
    ]},
}]

WSGI_APPLICATION = 'hospital.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.getenv('POSTGRES_DB', 'hospital'),
        'USER': os.getenv('POSTGRES_USER', 'postgres'),
        'PASSWORD': os.getenv('POSTGRES_PASSWORD', 'postgres'),
        'HOST': os.getenv('POSTGRES_HOST', 'db'),
        'PORT': os.getenv('POSTGRES_PORT', '5432'),
    }
}

# 用户表：带 role 字段（admin / reception / checkerDoctor / labTech / mainDoctor / pharmacy）
AUTH_USER_MODEL = 'clinic.User'

# ========== 缓存配置 ==========
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.redis.RedisCache',
        'LOCATION': f"redis://{os.getenv('REDIS_HOST', 'redis')}:{os.getenv('REDIS_PORT', '6379')}/0",
    }
}

# ========== Redis 配置（用于通知频道） ==========
REDIS_HOST = os.getenv('REDIS_HOST', 'redis')
REDIS_PORT = int(os.getenv('REDIS_PORT', '6379'))
REDIS_DB = 0

# 每个角色保留的最近通知条数（断线重连后补发用）
NOTIFICATION_HISTORY = int(os.getenv('NOTIFICATION_HISTORY', '50'))

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ========== 上传文件（化验结果附件） ==========
MEDIA_ROOT = os.getenv('MEDIA_ROOT', str(BASE_DIR / 'uploads'))
MEDIA_URL = '/uploads/'
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', str(5 * 1024 * 1024)))
ALLOWED_UPLOAD_TYPES = [
    'image/jpeg',
    'image/png',
    'image/gif',
    'application/pdf',
    'text/plain',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
]

# ========== Celery 配置 ==========
CELERY_BROKER_URL = f"redis://{os.getenv('REDIS_HOST', 'redis')}:{os.getenv('REDIS_PORT', '6379')}/1"
CELERY_RESULT_BACKEND = f"redis://{os.getenv('REDIS_HOST', 'redis')}:{os.getenv('REDIS_PORT', '6379')}/2"
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE
CELERY_RESULT_EXPIRES = 3600


# ============================================================================
# 日志配置
# ============================================================================
#
# 各模块使用 logging.getLogger(__name__)，统一输出到控制台。
# clinic.* 的级别由 LOG_LEVEL 控制（默认 INFO）。
# ============================================================================

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '[{asctime}] {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'clinic': {
            'level': os.getenv('LOG_LEVEL', 'INFO'),
        },
    },
}


# ============================================================================
# Django Rest Framework 配置
# ============================================================================
#
# 【核心配置】EXCEPTION_HANDLER
# -----------------------------
# 视图 / service 层只管 raise，格式统一在 custom_exception_handler 里处理。
#
# 【认证】
# TokenAuthentication：前端登录后带 "Authorization: Token <key>"
# SessionAuthentication：方便在浏览器里调试
# ============================================================================

REST_FRAMEWORK = {
    'EXCEPTION_HANDLER': 'clinic.exceptions.custom_exception_handler',

    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.TokenAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],

    # 只返回 JSON 格式（API 专用）
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],

    # 支持 JSON、Form 和 multipart（化验结果上传）
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
        'rest_framework.parsers.FormParser',
        'rest_framework.parsers.MultiPartParser',
    ],
}
