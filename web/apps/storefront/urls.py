from django.urls import path
from .views import StorefrontPingView
from .views import ProductCollectionView, ProductCategoriesView, ProductDetailView
from .views import CartView, CartItemsView, CartItemView, CheckoutView
from .views import CreatePaymentView, PaymentWebhookView
app_name = "storefront"

urlpatterns = [
    path("storefront/ping/", StorefrontPingView.as_view(), name="ping"),
    path("products/", ProductCollectionView.as_view(), name="products-collection"),  # GET ?q=&category=
    path("products/categories/", ProductCategoriesView.as_view(), name="products-categories"),
    path("products/<str:slug>/", ProductDetailView.as_view(), name="products-detail"),
    path("cart/", CartView.as_view(), name="cart"),  # GET read / DELETE clear
    path("cart/items/", CartItemsView.as_view(), name="cart-items"),
    path("cart/items/<int:index>/", CartItemView.as_view(), name="cart-item"),  # PATCH delta / DELETE remove
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("create-payment", CreatePaymentView.as_view(), name="create-payment"),
    path("webhook/", PaymentWebhookView.as_view(), name="webhook"),
]
