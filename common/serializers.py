from rest_framework import serializers


class EditableFieldsModelSerializer(serializers.ModelSerializer):
    """ModelSerializer whose update writes only the validated columns.

    Stock, versions, lifecycle states and driver assignments are owned by
    service functions; a generic PATCH must never write them back from the
    instance it loaded.
    """

    def update(self, instance, validated_data):
        update_fields = []
        for field, value in validated_data.items():
            setattr(instance, field, value)
            update_fields.append(field)
        if any(field.name == "updated_at" for field in instance._meta.concrete_fields):
            update_fields.append("updated_at")
        if update_fields:
            instance.save(update_fields=update_fields)
        return instance
