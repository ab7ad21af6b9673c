from django.urls import path
from .views import CheckoutDetailView, CheckoutsCollectionView, PaymentCallbackView
app_name = "checkouts"

urlpatterns = [
    path("", CheckoutsCollectionView.as_view(), name="checkouts-collection"),  # GET list / POST create
    path("payment-callback/", PaymentCallbackView.as_view(), name="payment-callback"),
    path("<str:reference>/", CheckoutDetailView.as_view(), name="checkouts-detail"),
]
