from django.urls import path

from . import views

app_name = "inventory"

urlpatterns = [
    path("stocks/", views.stock_list, name="stock-list"),
    path("stocks/low/", views.low_stock, name="stock-low"),
    path("stocks/product/<int:product_id>/", views.stock_by_product, name="stock-by-product"),
    path("stocks/initialize/", views.initialize, name="stock-initialize"),
    path("stocks/opname/", views.opname, name="stock-opname"),
    path("stocks/<int:stock_id>/adjust/", views.adjust, name="stock-adjust"),
    path("stocks/<int:stock_id>/movements/", views.movements, name="stock-movements"),
]
