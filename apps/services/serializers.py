from rest_framework import serializers
from .models import ServiceCatalogue


class ServiceCatalogueSerializer(serializers.ModelSerializer):
    """Read-only serializer for catalogue entries"""
    final_price = serializers.SerializerMethodField()

    class Meta:
        model = ServiceCatalogue
        fields = [
            'id', 'code', 'name', 'description', 'category',
            'base_price', 'discounted_price', 'final_price',
            'unit_of_measure', 'is_active', 'is_billable',
            'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_final_price(self, obj):
        return str(obj.calculate_final_price())
