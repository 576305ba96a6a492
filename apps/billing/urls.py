from django.urls import path, include
from rest_framework.routers import DefaultRouter

from .views import BillingAccountViewSet, InvoiceViewSet

app_name = 'billing'

router = DefaultRouter()
router.register(r'accounts', BillingAccountViewSet, basename='account')
router.register(r'invoices', InvoiceViewSet, basename='invoice')

urlpatterns = [
    path('', include(router.urls)),
]
