import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.db import AuditLog, Base, Company, Tenant
from shared.errors import ServiceError
from services.records_service import (
    create_record,
    get_record,
    list_audit_events,
    list_records,
    restore_record,
    soft_delete_record,
    update_record,
)


class RecordsServiceTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(bind=self.engine)
        Session = sessionmaker(bind=self.engine)
        self.db = Session()

        self.tenant = Tenant(name="Acme")
        self.other_tenant = Tenant(name="Globex")
        self.db.add_all([self.tenant, self.other_tenant])
        self.db.commit()
        self.actor_id = "user-1"

    def tearDown(self):
        self.db.close()

    def _company(self, name="Northwind", **extra):
        payload = {"name": name}
        payload.update(extra)
        return create_record(self.db, "companies", self.tenant.id, payload, actor_id=self.actor_id)

    def test_create_coerces_fields_and_audits(self):
        created = self._company(is_lead="true", tenant_id=self.other_tenant.id, id="forced-id")

        self.assertTrue(created["is_lead"])
        self.assertEqual(created["tenant_id"], self.tenant.id)
        self.assertNotEqual(created["id"], "forced-id")
        self.assertEqual(created["created_by"], self.actor_id)
        events = list_audit_events(self.db, self.tenant.id, "companies", created["id"])
        self.assertEqual([event["action"] for event in events], ["create"])
        self.assertEqual(events[0]["after"]["name"], "Northwind")
        self.assertIsNone(events[0]["before"])

    def test_create_requires_fields_and_known_entity(self):
        with self.assertRaises(ServiceError) as missing:
            create_record(self.db, "companies", self.tenant.id, {}, actor_id=self.actor_id)
        self.assertEqual(missing.exception.status_code, 400)
        with self.assertRaises(ServiceError) as unknown:
            create_record(self.db, "invoices", self.tenant.id, {"name": "x"}, actor_id=self.actor_id)
        self.assertEqual(unknown.exception.status_code, 404)

    def test_deal_status_is_validated_and_dates_parsed(self):
        with self.assertRaises(ServiceError) as bad:
            create_record(self.db, "deals", self.tenant.id, {"name": "Roof", "status": "maybe"}, actor_id=self.actor_id)
        self.assertEqual(bad.exception.status_code, 400)

        deal = create_record(
            self.db,
            "deals",
            self.tenant.id,
            {"name": "Roof", "status": "proposal", "value": "1250.50", "expected_close_date": "2026-06-30"},
            actor_id=self.actor_id,
        )
        self.assertEqual(deal["value"], 1250.5)
        self.assertEqual(deal["expected_close_date"], "2026-06-30")

    def test_update_audits_only_changed_fields(self):
        created = self._company(phone="123")

        updated = update_record(
            self.db,
            "companies",
            self.tenant.id,
            created["id"],
            {"phone": "456", "name": "Northwind", "tenant_id": self.other_tenant.id},
            actor_id=self.actor_id,
        )

        self.assertEqual(updated["phone"], "456")
        self.assertEqual(updated["tenant_id"], self.tenant.id)
        update_event = self.db.query(AuditLog).filter_by(entity_id=created["id"], action="update").one()
        events = {event["id"]: event for event in list_audit_events(self.db, self.tenant.id, "companies", created["id"])}
        self.assertEqual(events[update_event.id]["before"], {"phone": "123"})
        self.assertEqual(events[update_event.id]["after"], {"phone": "456"})

    def test_update_without_changes_writes_no_audit(self):
        created = self._company()
        update_record(self.db, "companies", self.tenant.id, created["id"], {"name": "Northwind"}, actor_id=self.actor_id)
        self.assertEqual(self.db.query(AuditLog).filter_by(entity_id=created["id"]).count(), 1)

    def test_soft_delete_hides_record_until_restored(self):
        created = self._company()

        deleted = soft_delete_record(self.db, "companies", self.tenant.id, created["id"], actor_id=self.actor_id)
        self.assertIsNotNone(deleted["deleted_at"])
        self.assertIsNotNone(self.db.query(Company).filter_by(id=created["id"]).one())

        with self.assertRaises(ServiceError) as hidden:
            get_record(self.db, "companies", self.tenant.id, created["id"])
        self.assertEqual(hidden.exception.status_code, 404)
        self.assertEqual(list_records(self.db, "companies", self.tenant.id)[0], [])
        items, _ = list_records(self.db, "companies", self.tenant.id, include_deleted=True)
        self.assertEqual([item["id"] for item in items], [created["id"]])

        restored = restore_record(self.db, "companies", self.tenant.id, created["id"], actor_id=self.actor_id)
        self.assertIsNone(restored["deleted_at"])
        self.assertEqual(get_record(self.db, "companies", self.tenant.id, created["id"])["name"], "Northwind")

        actions = {row.action for row in self.db.query(AuditLog).filter_by(entity_id=created["id"])}
        self.assertEqual(actions, {"create", "delete", "restore"})

    def test_restore_requires_deleted_record(self):
        created = self._company()
        with self.assertRaises(ServiceError) as ctx:
            restore_record(self.db, "companies", self.tenant.id, created["id"], actor_id=self.actor_id)
        self.assertEqual(ctx.exception.message, "Record is not deleted")

    def test_tenant_isolation(self):
        created = self._company()
        create_record(self.db, "companies", self.other_tenant.id, {"name": "Initech"}, actor_id=self.actor_id)

        items, _ = list_records(self.db, "companies", self.tenant.id)
        self.assertEqual([item["name"] for item in items], ["Northwind"])
        with self.assertRaises(ServiceError):
            get_record(self.db, "companies", self.other_tenant.id, created["id"])
        with self.assertRaises(ServiceError):
            soft_delete_record(self.db, "companies", self.other_tenant.id, created["id"], actor_id=self.actor_id)
        self.assertEqual(list_audit_events(self.db, self.other_tenant.id, "companies", created["id"]), [])

    def test_list_filters_and_pagination(self):
        for index in range(3):
            self._company(name=f"Lead {index}", is_lead=True)
        self._company(name="Customer", is_lead=False)

        leads, has_more = list_records(self.db, "companies", self.tenant.id, filters={"is_lead": "true"}, limit=2)
        self.assertEqual(len(leads), 2)
        self.assertTrue(has_more)
        rest, has_more = list_records(
            self.db, "companies", self.tenant.id, filters={"is_lead": "true"}, limit=2, offset=2
        )
        self.assertEqual(len(rest), 1)
        self.assertFalse(has_more)
        self.assertTrue(all(item["is_lead"] for item in leads + rest))


if __name__ == "__main__":
    unittest.main()
