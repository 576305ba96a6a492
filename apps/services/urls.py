from django.urls import path, include
from rest_framework.routers import DefaultRouter
from .views import ServiceCatalogueViewSet

app_name = 'services'

router = DefaultRouter()
router.register(r'catalogue', ServiceCatalogueViewSet, basename='catalogue')

urlpatterns = [
    path('', include(router.urls))
]
