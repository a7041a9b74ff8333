import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_flag(name, default=''):
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def env_list(name, default=''):
    return [x.strip() for x in os.environ.get(name, default).split(',') if x.strip()]


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY') or 'dev-only-secret-change-me'

DEBUG = env_flag('DJANGO_DEBUG')

ALLOWED_HOSTS = env_list('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1,.cappellamarialis.pl,.vercel.app')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'payments',
    'news',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'cm_site.urls'

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

WSGI_APPLICATION = 'cm_site.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DJANGO_DB_PATH') or BASE_DIR / 'db.sqlite3',
    }
}

AUTH_PASSWORD_VALIDATORS = []

LANGUAGE_CODE = 'pl'

TIME_ZONE = 'Europe/Warsaw'

USE_I18N = True

USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# === Logging ===
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {'format': '%(asctime)s %(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'simple'},
    },
    'root': {
        'handlers': ['console'],
        'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
    },
}

# === Email (podziękowanie po wpłacie) ===
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'smtp.resend.com')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.environ.get('EMAIL_HOST_USER', 'resend')
EMAIL_HOST_PASSWORD = os.environ.get('EMAIL_HOST_PASSWORD') or os.environ.get('RESEND_API_KEY', '')
EMAIL_USE_TLS = True
# Vide = pas d'envoi (l'email de remerciement est alors ignoré)
DEFAULT_FROM_EMAIL = os.environ.get('EMAIL_FROM', '')
EMAIL_SUBJECT = os.environ.get('EMAIL_SUBJECT', 'Dziękujemy za wsparcie!')
ORG_NAME = os.environ.get('ORG_NAME', 'Fundacja')
SUPPORT_URL = os.environ.get('SUPPORT_URL', '')

# === Przelewy24 (config via variables d'environnement) ===
PAYMENTS = {
    'P24_MERCHANT_ID': os.environ.get('P24_MERCHANT_ID', ''),
    'P24_POS_ID': os.environ.get('P24_POS_ID', ''),
    'P24_API_KEY': os.environ.get('P24_API_KEY', ''),
    'P24_CRC': os.environ.get('P24_CRC', ''),
    'P24_SANDBOX': env_flag('P24_SANDBOX'),
    'P24_BASE_URL': os.environ.get('P24_BASE_URL', ''),
    'P24_DESCRIPTION': os.environ.get('P24_DESCRIPTION', 'Darowizna'),
    'P24_RETURN_PATH': os.environ.get('P24_RETURN_PATH', '/pl/dziekujemy'),
    'P24_RETURN_PATH_EN': os.environ.get('P24_RETURN_PATH_EN', '/en/thank-you'),
    'P24_STATUS_PATH': os.environ.get('P24_STATUS_PATH', '/api/p24/status'),
    'DONATION_MIN_AMOUNT': int(os.environ.get('DONATION_MIN_GROSZE', '100')),
    'DONATION_MAX_AMOUNT': int(os.environ.get('DONATION_MAX_GROSZE', '1000000')),
    'REQUIRE_DONOR_EMAIL': os.environ.get('REQUIRE_DONOR_EMAIL', 'true').strip().lower() != 'false',
    'CONSENTS_VERSION': os.environ.get('CONSENTS_VERSION', '1'),
    # 200 même en cas d'erreur d'intégration (False: 502 pour relance P24)
    'WEBHOOK_ALWAYS_ACK': os.environ.get('P24_WEBHOOK_ALWAYS_ACK', 'true').strip().lower() != 'false',
}

# === Aktualności Facebook + tłumaczenie ===
NEWS = {
    'FACEBOOK_PAGE_ID': os.environ.get('FACEBOOK_PAGE_ID', ''),
    'FACEBOOK_PAGE_TOKEN': os.environ.get('FACEBOOK_PAGE_TOKEN', ''),
    'GRAPH_API_VERSION': os.environ.get('GRAPH_API_VERSION', 'v18.0'),
    'POSTS_LIMIT': int(os.environ.get('NEWS_POSTS_LIMIT', '3')),
    'CACHE_REFRESH_HOURS': float(os.environ.get('NEWS_CACHE_REFRESH_HOURS', '0.25')),
    'SOURCE_LANGUAGE': 'pl',
    'DERIVED_LANGUAGES': env_list('NEWS_DERIVED_LANGUAGES', 'en'),
    'TRANSLATION': {
        'PROVIDER': os.environ.get('TRANSLATION_PROVIDER', 'deepl'),
        'API_KEY': os.environ.get('DEEPL_API_KEY', ''),
        'ENDPOINTS': env_list('TRANSLATION_ENDPOINTS'),
        'TIMEOUT': float(os.environ.get('TRANSLATION_TIMEOUT', '8')),
    },
}
