import os
import unittest

os.environ.setdefault("DEVICE_MANAGER_DB_URL", "sqlite+pysqlite:///:memory:")

from device_manager.models.device_state import Assigned, Available, Dead, Missing, Pending, Returned
from device_manager.services.transition_errors import (
    DeviceNotAvailable,
    DuplicatePendingRequest,
    InvalidReportType,
    InvalidRequestType,
    MustReleaseFirst,
    NotOwner,
)
from device_manager.services.transition_rules import normalize_report_type, normalize_role, validate_transition


class TransitionRulesTests(unittest.TestCase):
    def test_assign_requires_available_device(self):
        self.assertIsNone(validate_transition(Available(), False, "assign", None, 7, "user"))
        rejection = validate_transition(Assigned(holder_id=3), False, "assign", None, 7, "user")
        self.assertIsInstance(rejection, DeviceNotAvailable)
        self.assertIsInstance(validate_transition(Missing(), False, "assign", None, 7, "user"), DeviceNotAvailable)

    def test_release_by_holder_or_admin_only(self):
        state = Assigned(holder_id=7)
        self.assertIsNone(validate_transition(state, False, "release", None, 7, "user"))
        self.assertIsInstance(validate_transition(state, False, "release", None, 8, "user"), NotOwner)
        self.assertIsInstance(validate_transition(state, False, "release", None, 8, "manager"), NotOwner)
        self.assertIsNone(validate_transition(state, False, "release", None, 8, "admin"))

    def test_return_of_assigned_device_must_release_first(self):
        self.assertIsInstance(
            validate_transition(Assigned(holder_id=7), False, "return", None, 7, "user"),
            MustReleaseFirst,
        )
        self.assertIsNone(validate_transition(Available(), False, "return", None, 7, "user"))
        self.assertIsNone(validate_transition(Dead(), False, "return", None, 7, "user"))

    def test_report_requires_known_report_type(self):
        self.assertIsInstance(validate_transition(Available(), False, "report", None, 7, "user"), InvalidReportType)
        self.assertIsInstance(validate_transition(Available(), False, "report", "lost", 7, "user"), InvalidReportType)
        for state in (Available(), Assigned(holder_id=7), Returned(), Missing()):
            self.assertIsNone(validate_transition(state, False, "report", "stolen", 7, "user"))

    def test_any_request_is_rejected_while_another_is_pending(self):
        for request_type, report_type in (("assign", None), ("release", None), ("return", None), ("report", "dead")):
            rejection = validate_transition(Pending(requester_id=3), True, request_type, report_type, 3, "admin")
            self.assertIsInstance(rejection, DuplicatePendingRequest, request_type)

    def test_unknown_request_type(self):
        self.assertIsInstance(validate_transition(Available(), False, "borrow", None, 7, "user"), InvalidRequestType)

    def test_role_and_report_type_normalization(self):
        self.assertEqual(normalize_role(" Admin "), "admin")
        self.assertEqual(normalize_role("superuser"), "user")
        self.assertEqual(normalize_role(None), "user")
        self.assertEqual(normalize_report_type("report", " Stolen "), "stolen")
        self.assertIsNone(normalize_report_type("assign", "stolen"))


if __name__ == "__main__":
    unittest.main()
