"""Tests for bundle/ssa.py module."""

from kubernetes import client

from trust_sync.bundle.ssa import (
    FIELD_MANAGER,
    is_legacy_entry,
    managed_fields_patch,
    merge_fields,
    owned_keys,
    upgrade_managed_fields,
)

CONFIG_MAP_FIELDS = ("data", "binaryData")


def _entry(manager, operation, fields_v1, subresource=None):
    return client.V1ManagedFieldsEntry(
        manager=manager,
        operation=operation,
        api_version="v1",
        fields_type="FieldsV1",
        fields_v1=fields_v1,
        subresource=subresource,
    )


class TestOwnedKeys:
    """Tests for reading owned data keys."""

    def test_owned_keys(self):
        """Test keys under data and binaryData are collected for the manager."""
        entries = [
            _entry(FIELD_MANAGER, "Apply", {"f:data": {"f:ca.crt": {}}, "f:binaryData": {"f:bundle.jks": {}}}),
            _entry("kubectl", "Update", {"f:data": {"f:other": {}}}),
        ]

        assert owned_keys(entries, FIELD_MANAGER, CONFIG_MAP_FIELDS) == {"ca.crt", "bundle.jks"}

    def test_non_key_fields_ignored(self):
        """Test '.' markers and metadata fields are not reported as keys."""
        entries = [_entry(FIELD_MANAGER, "Apply", {"f:data": {".": {}, "f:ca.crt": {}}, "f:metadata": {}})]

        assert owned_keys(entries, FIELD_MANAGER, ("data",)) == {"ca.crt"}

    def test_no_managed_fields(self):
        """Test objects without managed fields own nothing."""
        assert owned_keys(None, FIELD_MANAGER, CONFIG_MAP_FIELDS) == set()


class TestLegacyEntries:
    """Tests for detecting client-side written entries."""

    def test_update_from_field_manager(self):
        """Test an Update entry owning data is legacy."""
        assert is_legacy_entry(_entry(FIELD_MANAGER, "Update", {"f:data": {"f:ca.crt": {}}}), CONFIG_MAP_FIELDS)

    def test_update_from_default_user_agent(self):
        """Test entries written under the default Go user agent are legacy."""
        assert is_legacy_entry(_entry("Go-http-client", "Update", {"f:data": {"f:ca.crt": {}}}), CONFIG_MAP_FIELDS)

    def test_apply_is_not_legacy(self):
        """Test Apply entries are left alone."""
        assert not is_legacy_entry(_entry(FIELD_MANAGER, "Apply", {"f:data": {"f:ca.crt": {}}}), CONFIG_MAP_FIELDS)

    def test_other_manager_is_not_legacy(self):
        """Test entries from unrelated managers are left alone."""
        assert not is_legacy_entry(_entry("kubectl", "Update", {"f:data": {"f:ca.crt": {}}}), CONFIG_MAP_FIELDS)

    def test_update_without_data(self):
        """Test Update entries that don't own data are left alone."""
        assert not is_legacy_entry(_entry(FIELD_MANAGER, "Update", {"f:metadata": {}}), CONFIG_MAP_FIELDS)

    def test_status_subresource(self):
        """Test subresource entries are left alone."""
        entry = _entry(FIELD_MANAGER, "Update", {"f:data": {"f:ca.crt": {}}}, subresource="status")

        assert not is_legacy_entry(entry, CONFIG_MAP_FIELDS)


class TestMergeFields:
    """Tests for FieldsV1 merging."""

    def test_deep_merge(self):
        """Test nested fields from both sides are kept."""
        merged = merge_fields(
            {"f:data": {"f:a": {}}, "f:metadata": {"f:labels": {"f:x": {}}}},
            {"f:data": {"f:b": {}}, "f:binaryData": {"f:c": {}}},
        )

        assert merged == {
            "f:data": {"f:a": {}, "f:b": {}},
            "f:metadata": {"f:labels": {"f:x": {}}},
            "f:binaryData": {"f:c": {}},
        }

    def test_inputs_not_mutated(self):
        """Test merging returns a new tree."""
        base = {"f:data": {"f:a": {}}}

        merge_fields(base, {"f:data": {"f:b": {}}})

        assert base == {"f:data": {"f:a": {}}}


class TestUpgradeManagedFields:
    """Tests for migrating legacy ownership to Apply."""

    def test_nothing_to_migrate(self):
        """Test None is returned when no legacy entry exists."""
        entries = [_entry(FIELD_MANAGER, "Apply", {"f:data": {"f:ca.crt": {}}})]

        assert upgrade_managed_fields(entries, CONFIG_MAP_FIELDS) is None

    def test_legacy_entry_becomes_apply(self):
        """Test a lone Update entry is replaced by an Apply entry with the same fields."""
        entries = [
            _entry("kubectl", "Update", {"f:metadata": {"f:labels": {}}}),
            _entry(FIELD_MANAGER, "Update", {"f:data": {"f:ca.crt": {}, "f:old": {}}}),
        ]

        upgraded = upgrade_managed_fields(entries, CONFIG_MAP_FIELDS)

        assert [(e["manager"], e["operation"]) for e in upgraded] == [("kubectl", "Update"), (FIELD_MANAGER, "Apply")]
        assert upgraded[1]["fieldsV1"] == {"f:data": {"f:ca.crt": {}, "f:old": {}}}

    def test_legacy_merged_into_existing_apply(self):
        """Test legacy fields join an Apply entry that already exists."""
        entries = [
            _entry(FIELD_MANAGER, "Apply", {"f:data": {"f:ca.crt": {}}}),
            _entry("Go-http-client", "Update", {"f:binaryData": {"f:bundle.jks": {}}}),
        ]

        upgraded = upgrade_managed_fields(entries, CONFIG_MAP_FIELDS)

        assert len(upgraded) == 1
        assert upgraded[0]["operation"] == "Apply"
        assert upgraded[0]["fieldsV1"] == {"f:data": {"f:ca.crt": {}}, "f:binaryData": {"f:bundle.jks": {}}}


class TestManagedFieldsPatch:
    """Tests for the migration JSON patch."""

    def test_patch_is_guarded(self):
        """Test the patch tests the resource version before replacing."""
        patch = managed_fields_patch("42", [{"manager": FIELD_MANAGER}])

        assert patch == [
            {"op": "test", "path": "/metadata/resourceVersion", "value": "42"},
            {"op": "replace", "path": "/metadata/managedFields", "value": [{"manager": FIELD_MANAGER}]},
        ]
