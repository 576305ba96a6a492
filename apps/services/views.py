from rest_framework import viewsets, filters
from django_filters.rest_framework import DjangoFilterBackend

from .models import ServiceCatalogue
from .serializers import ServiceCatalogueSerializer


class ServiceCatalogueViewSet(viewsets.ReadOnlyModelViewSet):
    """Read-only catalogue lookup; catalogue maintenance happens in master data"""
    queryset = ServiceCatalogue.objects.filter(is_active=True)
    serializer_class = ServiceCatalogueSerializer
    filter_backends = [
        DjangoFilterBackend,
        filters.SearchFilter,
        filters.OrderingFilter
    ]
    filterset_fields = ['category', 'is_billable']
    search_fields = ['name', 'code', 'description']
    ordering_fields = ['name', 'base_price', 'created_at']
