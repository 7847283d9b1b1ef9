from common.exceptions import ValidationFailedError


class AppendOnlyMixin:
    """Model mixin for ledger-style rows: insert once, never update or delete."""

    immutable_message = "Records of this kind cannot be changed once written."

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationFailedError(self.immutable_message)
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationFailedError(self.immutable_message)
