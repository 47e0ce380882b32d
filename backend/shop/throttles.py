from rest_framework.throttling import SimpleRateThrottle


class BaseUserRateThrottle(SimpleRateThrottle):
    def get_cache_key(self, request, view):
        if request.user and request.user.is_authenticated:
            ident = request.user.pk
        else:
            ident = self.get_ident(request)
        return self.cache_format % {"scope": self.scope, "ident": ident}


class GuestCheckoutThrottle(SimpleRateThrottle):
    """Limit guest orders per e-mail address; registered customers are not limited."""

    scope = "guest_checkout"

    def get_cache_key(self, request, view):
        if request.user and request.user.is_authenticated:
            return None
        email = request.data.get("customer_email") if hasattr(request.data, "get") else None
        ident = str(email).strip().lower() if email else self.get_ident(request)
        return self.cache_format % {"scope": self.scope, "ident": ident}


class PromoValidateThrottle(BaseUserRateThrottle):
    scope = "promo_validate"


class QrRateThrottle(BaseUserRateThrottle):
    scope = "qr"
