from pathlib import Path
import os
from django.core.exceptions import ImproperlyConfigured

# Optional error monitoring via Sentry
SENTRY_DSN = os.environ.get('SENTRY_DSN')
SENTRY_TRACES_SAMPLE_RATE = float(os.environ.get('SENTRY_TRACES_SAMPLE_RATE', '0.0'))
if SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[DjangoIntegration()],
        traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
    )

BASE_DIR = Path(__file__).resolve().parent.parent

DEBUG = os.environ.get('DJANGO_DEBUG', 'True').lower() == 'true'

# Secret key: require in production
SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-secret-key-change-me')
if not DEBUG and not os.environ.get('DJANGO_SECRET_KEY'):
    raise ImproperlyConfigured('DJANGO_SECRET_KEY is required when DEBUG=False')

_hosts = os.environ.get('DJANGO_ALLOWED_HOSTS')
if _hosts is not None:
    ALLOWED_HOSTS = [h.strip() for h in _hosts.split(',') if h.strip()]
else:
    ALLOWED_HOSTS = ["*"] if DEBUG else []

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'balances',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'balances.middleware.ApiErrorMiddleware',
]

ROOT_URLCONF = 'tracker.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'tracker.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

# Row locks (select_for_update) only take effect on a server database such as Postgres
DB_ENGINE = os.environ.get('DJANGO_DB_ENGINE')
if DB_ENGINE:
    DATABASES['default'] = {
        'ENGINE': DB_ENGINE,  # e.g., 'django.db.backends.postgresql'
        'NAME': os.environ.get('DJANGO_DB_NAME', ''),
        'USER': os.environ.get('DJANGO_DB_USER', ''),
        'PASSWORD': os.environ.get('DJANGO_DB_PASSWORD', ''),
        'HOST': os.environ.get('DJANGO_DB_HOST', 'localhost'),
        'PORT': os.environ.get('DJANGO_DB_PORT', ''),
    }

AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
        'OPTIONS': {'min_length': 8},
    },
]

LANGUAGE_CODE = 'en-us'
# The one civil timezone used for schedules, occurrence dates and scheduler ticks.
TIME_ZONE = os.environ.get('TRACKER_TIME_ZONE', 'America/New_York')
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Balance protocol
BALANCES_DEFAULT_DURATION_MINUTES = int(os.environ.get('BALANCES_DEFAULT_DURATION_MINUTES', '60'))
BALANCES_SCHEDULER_INTERVAL_SECONDS = int(os.environ.get('BALANCES_SCHEDULER_INTERVAL_SECONDS', '300'))
BALANCES_SCHEDULER_LOOKBACK_DAYS = int(os.environ.get('BALANCES_SCHEDULER_LOOKBACK_DAYS', '0'))

if not DEBUG:
    SECURE_SSL_REDIRECT = os.environ.get('DJANGO_SECURE_SSL_REDIRECT', 'true').lower() == 'true'
    SESSION_COOKIE_SECURE = True
    CSRF_COOKIE_SECURE = True
    SECURE_HSTS_SECONDS = int(os.environ.get('DJANGO_HSTS_SECONDS', '31536000'))  # 1 year
    SECURE_CONTENT_TYPE_NOSNIFF = True
    X_FRAME_OPTIONS = 'DENY'

    if os.environ.get('DJANGO_SECURE_PROXY_SSL_HEADER', 'false').lower() == 'true':
        SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')

# Admins for error emails (optional), comma-separated 'Name <email>' or 'email'
_admins = os.environ.get('DJANGO_ADMINS', '')
ADMINS = []
if _admins:
    for part in _admins.split(','):
        email = part.strip()
        if not email:
            continue
        if '<' in email and '>' in email:
            name = email.split('<', 1)[0].strip()
            addr = email[email.find('<')+1:email.find('>')].strip()
            ADMINS.append((name or addr, addr))
        else:
            ADMINS.append((email, email))

EMAIL_BACKEND = os.environ.get('DJANGO_EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.environ.get('DJANGO_EMAIL_HOST', '')
EMAIL_PORT = int(os.environ.get('DJANGO_EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.environ.get('DJANGO_EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.environ.get('DJANGO_EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = os.environ.get('DJANGO_EMAIL_USE_TLS', 'true').lower() == 'true'
SERVER_EMAIL = os.environ.get('DJANGO_SERVER_EMAIL', 'tracker@localhost')

# Logging: console in dev, rotating file plus console in production
LOG_DIR = Path(os.environ.get('TRACKER_LOG_DIR', BASE_DIR / 'logs'))
LOG_FILE = LOG_DIR / 'tracker.log'
if not DEBUG:
    os.makedirs(LOG_DIR, exist_ok=True)

_log_handlers = ['console'] if DEBUG else ['file', 'console']

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'standard': {
            'format': '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
        },
        'file': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': str(LOG_FILE),
            'maxBytes': 1024 * 1024 * 5,  # 5 MB
            'backupCount': 3,
            'formatter': 'standard',
            'delay': True,
        },
        'mail_admins': {
            'class': 'django.utils.log.AdminEmailHandler',
            'level': 'ERROR',
            'include_html': True,
        },
    },
    'loggers': {
        'django': {
            'handlers': list(_log_handlers),
            'level': 'INFO',
        },
        'balances': {
            'handlers': list(_log_handlers),
            'level': os.environ.get('BALANCES_LOG_LEVEL', 'INFO'),
        },
    },
}

# Enable email on errors only if SMTP and ADMINS configured
if EMAIL_HOST and ADMINS:
    LOGGING['loggers']['django']['handlers'].append('mail_admins')
    LOGGING['loggers']['balances']['handlers'].append('mail_admins')
