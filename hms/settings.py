import os
from pathlib import Path
from decouple import config, Csv

BASE_DIR = Path(__file__).resolve().parent.parent

# --- Security / Hosts ---
SECRET_KEY = config('SECRET_KEY', default='django-insecure-dev-only-change-me')
DEBUG = config('DEBUG', default=False, cast=bool)
ALLOWED_HOSTS = config('ALLOWED_HOSTS', default='127.0.0.1,localhost,testserver', cast=Csv())
CSRF_TRUSTED_ORIGINS = config('CSRF_TRUSTED_ORIGINS', default='', cast=Csv())

# --- JWT issued by the auth service ---
JWT_SECRET_KEY = config('JWT_SECRET_KEY', default='dev-jwt-secret')
JWT_ALGORITHM = config('JWT_ALGORITHM', default='HS256')


LOG_DIR = Path(BASE_DIR) / "logs"
os.makedirs(LOG_DIR, exist_ok=True)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,

    "formatters": {
        "verbose": {
            "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        },
    },

    "handlers": {
        "file": {
            "class": "logging.FileHandler",
            "filename": str(LOG_DIR / "hms.log"),
            "formatter": "verbose",
        },
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },

    "loggers": {
        "apps": {
            "handlers": ["console", "file"],
            "level": config('APP_LOG_LEVEL', default='INFO'),
            "propagate": False,
        },
        "common": {
            "handlers": ["console", "file"],
            "level": config('APP_LOG_LEVEL', default='INFO'),
            "propagate": False,
        },
    },

    "root": {  # catches all logs
        "handlers": ["console", "file"],
        "level": "ERROR",
    },
}

# If behind Nginx TLS termination:
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')
USE_X_FORWARDED_HOST = True

# --- Apps ---
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # 3rd-party
    'rest_framework',
    'corsheaders',
    'django_filters',
    'drf_spectacular',

    # Local
    'common',
    'apps.services',
    'apps.opd',
    'apps.billing',
]

# --- Middleware ---
MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'corsheaders.middleware.CorsMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    'common.middleware.RequestContextMiddleware',
]

ROOT_URLCONF = 'hms.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [os.path.join(BASE_DIR, 'templates')],
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

WSGI_APPLICATION = 'hms.wsgi.application'

# --- Database (use discrete env vars; sqlite when DB_NAME is unset) ---
DB_NAME = config('DB_NAME', default='')

if DB_NAME:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME':     DB_NAME,
            'USER':     config('DB_USER', default='postgres'),
            'PASSWORD': config('DB_PASSWORD', default=''),
            'HOST':     config('DB_HOST', default='localhost'),
            'PORT':     config('DB_PORT', default='5432'),
            'CONN_MAX_AGE': 600,
            'OPTIONS': {},
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'hms-directory',
    }
}

# --- Auth / Passwords ---
AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator', 'OPTIONS': {'min_length': 8}},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

# --- DRF ---
REST_FRAMEWORK = {
    # Identity comes from the JWT middleware (request.context)
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [
        'common.permissions.HasRequestContext',
    ],
    'UNAUTHENTICATED_USER': None,
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
        'rest_framework.filters.SearchFilter',
        'rest_framework.filters.OrderingFilter',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
        'rest_framework.renderers.BrowsableAPIRenderer',
    ],
    'DEFAULT_SCHEMA_CLASS': 'drf_spectacular.openapi.AutoSchema',
    'EXCEPTION_HANDLER': 'common.exceptions.hms_exception_handler',
}

SPECTACULAR_SETTINGS = {
    'TITLE': 'HMS OPD & Billing API',
    'DESCRIPTION': 'Outpatient visit lifecycle, triage and billing reconciliation',
    'VERSION': '1.0.0',
}

# --- CORS ---
CORS_ALLOWED_ORIGINS = config(
    'CORS_ALLOWED_ORIGINS',
    default='http://localhost:3000,http://127.0.0.1:3000',
    cast=Csv()
)
CORS_ALLOW_CREDENTIALS = True

# --- Master data directories (patients / physicians) ---
MASTER_DATA_URL = config('MASTER_DATA_URL', default='')
MASTER_DATA_TOKEN = config('MASTER_DATA_TOKEN', default='')
MASTER_DATA_TIMEOUT = config('MASTER_DATA_TIMEOUT', default=10, cast=int)
MASTER_DATA_CACHE_SECONDS = config('MASTER_DATA_CACHE_SECONDS', default=300, cast=int)

# --- Feature capabilities (resolved once at startup) ---
HMS_FEATURES = {
    'lab_orders': config('HMS_FEATURE_LAB_ORDERS', default=True, cast=bool),
    'parse_plan_medications': config('HMS_FEATURE_PARSE_PLAN', default=True, cast=bool),
    'auto_invoice_on_prescription': config('HMS_FEATURE_AUTO_INVOICE', default=False, cast=bool),
}

# --- Triage thresholds (score -> level) ---
HMS_TRIAGE = {
    'emergency_score': config('TRIAGE_EMERGENCY_SCORE', default=7, cast=int),
    'urgent_score': config('TRIAGE_URGENT_SCORE', default=5, cast=int),
    'non_urgent_score': config('TRIAGE_NON_URGENT_SCORE', default=1, cast=int),
}

# --- Billing price fallbacks ---
HMS_BILLING = {
    'fallback_price': config('BILLING_FALLBACK_PRICE', default='50.00'),
    'default_prices': {},
}

# --- I18N / TZ ---
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'Asia/Kolkata'
USE_I18N = True
USE_TZ = True

# --- Static / Media ---
STATIC_URL = '/static/'
STATIC_ROOT = os.path.join(BASE_DIR, 'staticfiles')
STORAGES = {
    'default': {
        'BACKEND': 'django.core.files.storage.FileSystemStorage',
    },
    'staticfiles': {
        'BACKEND': 'whitenoise.storage.CompressedManifestStaticFilesStorage',
    },
}

MEDIA_URL = '/media/'
MEDIA_ROOT = os.path.join(BASE_DIR, 'media')

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
