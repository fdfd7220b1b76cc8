import django_filters
from django.db.models import F, Q

from .models import Stock, StockMovement


class StockFilter(django_filters.FilterSet):
    branch_id = django_filters.NumberFilter(field_name="branch_id")
    low_stock = django_filters.BooleanFilter(method="filter_low_stock")
    search = django_filters.CharFilter(method="filter_search")

    class Meta:
        model = Stock
        fields = []

    def filter_low_stock(self, queryset, name, value):
        if value:
            return queryset.filter(quantity__lte=F("minimum_stock"))
        return queryset

    def filter_search(self, queryset, name, value):
        value = value.strip()
        if not value:
            return queryset
        return queryset.filter(Q(product__name__icontains=value) | Q(product__code__icontains=value))


class StockMovementFilter(django_filters.FilterSet):
    from_date = django_filters.DateFilter(field_name="created_at", lookup_expr="date__gte")
    to_date = django_filters.DateFilter(field_name="created_at", lookup_expr="date__lte")

    class Meta:
        model = StockMovement
        fields = []
