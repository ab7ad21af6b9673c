from django.db import models
from django.utils import timezone


class PaymentMethodChoices(models.TextChoices):
    CREDIT_CARD = "CREDIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    E_WALLET = "E_WALLET"
    CASH = "CASH"


class Book(models.Model):
    # Catalog row; this app only touches stock and sold_count
    title = models.CharField(max_length=255)
    author = models.CharField(max_length=255, blank=True, default="")
    price_cents = models.PositiveIntegerField()
    stock = models.PositiveIntegerField(default=0)
    sold_count = models.PositiveIntegerField(default=0)
    is_deleted = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "books"

    def __str__(self):
        return self.title


class CheckoutModel(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        PAID = "PAID"
        FAILED = "FAILED"

    user_id = models.BigIntegerField(db_index=True)
    reference_number = models.CharField(max_length=32, unique=True, editable=False)
    total_cents = models.PositiveIntegerField()
    payment_status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    payment_method = models.CharField(max_length=16, choices=PaymentMethodChoices.choices)
    payment_reference_number = models.CharField(max_length=128, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "checkouts"
        ordering = ["-created_at", "-id"]


class CheckoutItemModel(models.Model):
    # Price captured at purchase time, never recomputed from the catalog
    checkout = models.ForeignKey(CheckoutModel, on_delete=models.PROTECT, related_name="items")
    book = models.ForeignKey(Book, on_delete=models.PROTECT, related_name="+")
    quantity = models.PositiveIntegerField()
    price_cents = models.PositiveIntegerField()
    subtotal_cents = models.PositiveIntegerField()

    class Meta:
        db_table = "checkout_items"
        ordering = ["id"]


class PaymentCallbackJob(models.Model):
    class State(models.TextChoices):
        QUEUED = "QUEUED"
        PROCESSING = "PROCESSING"
        DONE = "DONE"
        DEAD = "DEAD"

    checkout_reference_number = models.CharField(max_length=64, db_index=True)
    status = models.CharField(max_length=16)
    payment_reference_number = models.CharField(max_length=128)

    state = models.CharField(max_length=16, choices=State.choices, default=State.QUEUED)
    attempts = models.PositiveIntegerField(default=0)
    available_at = models.DateTimeField(default=timezone.now)
    leased_until = models.DateTimeField(null=True, blank=True)
    locked_by = models.CharField(max_length=64, blank=True, default="")
    last_error = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "payment_callback_jobs"
        ordering = ["id"]
        indexes = [models.Index(fields=["state", "available_at"], name="pcj_state_available_idx")]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    checkout = models.ForeignKey(CheckoutModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
