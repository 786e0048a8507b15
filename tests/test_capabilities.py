"""Capability resolution and wildcard matching."""

from tracker.services.capability_service import (
    has_capability,
    list_capabilities_by_role,
    resolve_capabilities,
)


class TestHasCapability:

    def test_no_requirement_is_open(self):
        assert has_capability(set(), None)
        assert has_capability(set(), "")

    def test_exact_match(self):
        assert has_capability({"pipeline:hire"}, "pipeline:hire")
        assert not has_capability({"pipeline:reject"}, "pipeline:hire")

    def test_namespace_wildcard(self):
        assert has_capability({"pipeline:*"}, "pipeline:hire")
        assert not has_capability({"offer:*"}, "pipeline:hire")

    def test_wildcard_needs_a_namespace(self):
        assert not has_capability({"pipeline:*"}, "hire")


class TestResolveCapabilities:

    def test_union_of_role_rows_in_tenant(self, factory):
        tenant = factory.tenant(seed=False)
        other = factory.tenant(seed=False)
        factory.capability(tenant, "HR", "pipeline:advance", "pipeline:hire")
        factory.capability(other, "HR", "pipeline:reject")

        assert resolve_capabilities(tenant.id, "HR") == {"pipeline:advance", "pipeline:hire"}
        assert resolve_capabilities(tenant.id, "hr") == {"pipeline:advance", "pipeline:hire"}
        assert resolve_capabilities(tenant.id, "INTERVIEWER") == set()
        assert resolve_capabilities(tenant.id, None) == set()

    def test_list_by_role(self, factory):
        tenant = factory.tenant(seed=False)
        factory.capability(tenant, "HR", "pipeline:hire", "pipeline:advance")
        factory.capability(tenant, "ADMIN", "pipeline:*")

        assert list_capabilities_by_role(tenant.id) == [
            {"roleName": "ADMIN", "capabilities": ["pipeline:*"]},
            {"roleName": "HR", "capabilities": ["pipeline:advance", "pipeline:hire"]},
        ]
