from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import Q


class UserRole(models.TextChoices):
    CUSTOMER = "customer", "Customer"
    STAFF = "staff", "Staff"
    ADMIN = "admin", "Admin"


class LoyaltyTier(models.TextChoices):
    BRONZE = "BRONZE", "Bronze"
    SILVER = "SILVER", "Silver"
    GOLD = "GOLD", "Gold"


class User(AbstractUser):
    role = models.CharField(
        max_length=20,
        choices=UserRole.choices,
        default=UserRole.CUSTOMER,
    )
    # Cached projection of the ledger; only shop.loyalty writes these two fields.
    loyalty_points = models.IntegerField(default=0)
    loyalty_tier = models.CharField(
        max_length=10,
        choices=LoyaltyTier.choices,
        default=LoyaltyTier.BRONZE,
    )

    class Meta(AbstractUser.Meta):
        constraints = [
            models.CheckConstraint(
                condition=Q(loyalty_points__gte=0),
                name="user_loyalty_points_non_negative",
            )
        ]

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"

    @property
    def is_shop_staff(self) -> bool:
        return self.is_superuser or self.role in (UserRole.STAFF, UserRole.ADMIN)
