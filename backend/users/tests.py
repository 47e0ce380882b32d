from types import SimpleNamespace

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.test import TestCase

from .models import LoyaltyTier, UserRole
from .permissions import IsAdminUserRole, IsStaffOrAdminRole


class RolePermissionTests(TestCase):
    def setUp(self):
        User = get_user_model()
        self.customer = User.objects.create_user(username="customer", password="pass1234")
        self.staff = User.objects.create_user(username="staff", password="pass1234", role=UserRole.STAFF)
        self.admin = User.objects.create_user(username="admin", password="pass1234", role=UserRole.ADMIN)
        self.superuser = User.objects.create_superuser(username="root", password="pass1234")

    def allowed(self, permission, user):
        return permission().has_permission(SimpleNamespace(user=user), None)

    def test_staff_permission(self):
        self.assertFalse(self.allowed(IsStaffOrAdminRole, AnonymousUser()))
        self.assertFalse(self.allowed(IsStaffOrAdminRole, self.customer))
        self.assertTrue(self.allowed(IsStaffOrAdminRole, self.staff))
        self.assertTrue(self.allowed(IsStaffOrAdminRole, self.admin))
        self.assertTrue(self.allowed(IsStaffOrAdminRole, self.superuser))

    def test_admin_permission(self):
        self.assertFalse(self.allowed(IsAdminUserRole, self.staff))
        self.assertTrue(self.allowed(IsAdminUserRole, self.admin))
        self.assertTrue(self.allowed(IsAdminUserRole, self.superuser))

    def test_new_users_start_at_bronze_with_no_points(self):
        self.assertEqual(self.customer.role, UserRole.CUSTOMER)
        self.assertEqual(self.customer.loyalty_points, 0)
        self.assertEqual(self.customer.loyalty_tier, LoyaltyTier.BRONZE)
        self.assertFalse(self.customer.is_shop_staff)
        self.assertTrue(self.staff.is_shop_staff)
