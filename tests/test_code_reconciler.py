import unittest
from unittest.mock import MagicMock

from carriers_data_handlers import InPostDataHandler, EmailFacts
from code_reconciler import CodeReconciler, ProcessingOutcome
from shipment_registry import DuplicateTrackingNumberError
from fakes import FakeRegistry

TN = "JJD0002233573349014"
SOURCE = "parcels@example.com"

SCENARIO_A_TEXT = (
    f"PARCEL NO. {TN} ... COLLECTION CODE 247089 ... "
    "InPost shop - Co-operative NR13 5LP Norwich"
)
SCENARIO_D_TEXT = f"Parcel No. {TN}\nTO: John Smith\nEnter this code instead344 924 512"


def make_notifier(succeed=True):
    notifier = MagicMock()
    notifier.send_pickup_code.return_value = succeed
    return notifier


class PickupDeliveryTest(unittest.TestCase):

    def setUp(self):
        self.registry = FakeRegistry()
        self.notifier = make_notifier()
        self.reconciler = CodeReconciler(self.registry, self.notifier)
        self.facts = InPostDataHandler().extract_facts(SCENARIO_A_TEXT)

    def test_pickup_code_delivered_and_stamped(self):
        record = self.registry.add(TN, notification_channel_id="555")

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        self.assertTrue(outcome.delivered)
        self.assertTrue(outcome.is_settled())
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.pickup_code, "247089")
        self.assertEqual(stored.pickup_code_location, "Co-operative NR13 5LP Norwich")
        self.assertIsNotNone(stored.pickup_code_delivered_at)
        self.assertIsNotNone(stored.email_received_at)
        self.notifier.send_pickup_code.assert_called_once_with(
            "555", TN, "247089", "Co-operative NR13 5LP Norwich"
        )

    def test_second_reconcile_does_not_deliver_again(self):
        self.registry.add(TN, notification_channel_id="555")

        self.reconciler.reconcile(self.facts, SOURCE)
        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.ALREADY_PROCESSED)
        self.assertTrue(outcome.is_settled())
        self.assertEqual(self.notifier.send_pickup_code.call_count, 1)

    def test_failed_delivery_keeps_code_and_retries(self):
        record = self.registry.add(TN, notification_channel_id="555")
        self.notifier.send_pickup_code.return_value = False

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PENDING)
        self.assertEqual(outcome.reason, ProcessingOutcome.DELIVERY_FAILED)
        self.assertFalse(outcome.is_settled())
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.pickup_code, "247089")
        self.assertEqual(stored.pickup_code_location, "Co-operative NR13 5LP Norwich")
        self.assertIsNone(stored.pickup_code_delivered_at)

        self.reconciler.reconcile(self.facts, SOURCE)
        self.assertEqual(self.notifier.send_pickup_code.call_count, 2)

        self.notifier.send_pickup_code.return_value = True
        outcome = self.reconciler.reconcile(self.facts, SOURCE)
        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        self.assertIsNotNone(self.registry.get(record.record_id).pickup_code_delivered_at)

    def test_notifier_exception_counts_as_failed_delivery(self):
        record = self.registry.add(TN, notification_channel_id="555")
        self.notifier.send_pickup_code.side_effect = ConnectionError("down")

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.reason, ProcessingOutcome.DELIVERY_FAILED)
        self.assertIsNone(self.registry.get(record.record_id).pickup_code_delivered_at)

    def test_without_channel_code_is_stamped_without_sending(self):
        record = self.registry.add(TN)

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        self.assertFalse(outcome.delivered)
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.pickup_code, "247089")
        self.assertIsNotNone(stored.pickup_code_delivered_at)
        self.notifier.send_pickup_code.assert_not_called()

    def test_ambiguous_match_touches_nothing(self):
        self.registry.add(TN, notification_channel_id="1")
        self.registry.add(TN, notification_channel_id="2")

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.SKIPPED)
        self.assertEqual(outcome.reason, ProcessingOutcome.AMBIGUOUS)
        self.assertEqual(self.registry.updates, [])
        self.assertEqual(self.registry.inserts, [])
        self.notifier.send_pickup_code.assert_not_called()


class DropoffCodeTest(unittest.TestCase):

    def setUp(self):
        self.registry = FakeRegistry()
        self.notifier = make_notifier()
        self.reconciler = CodeReconciler(self.registry, self.notifier)
        self.facts = InPostDataHandler().extract_facts(SCENARIO_D_TEXT)

    def test_dropoff_code_recorded_never_sent(self):
        record = self.registry.add(TN, notification_channel_id="555")

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.dropoff_code, "344924512")
        self.assertEqual(stored.dropoff_recipient_name, "John Smith")
        self.assertIsNotNone(stored.dropoff_code_recorded_at)
        self.assertIsNone(stored.pickup_code)
        self.notifier.send_pickup_code.assert_not_called()
        self.notifier.send_admin_notification.assert_not_called()

    def test_labelled_grouped_dropoff_code_never_sent(self):
        record = self.registry.add(TN, notification_channel_id="555")
        facts = InPostDataHandler().extract_facts(f"Parcel No. {TN}\nYour code: 344 924 512")

        outcome = self.reconciler.reconcile(facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.dropoff_code, "344924512")
        self.assertIsNone(stored.pickup_code)
        self.notifier.send_pickup_code.assert_not_called()

    def test_recorded_dropoff_is_already_processed(self):
        self.registry.add(TN, notification_channel_id="555")
        self.reconciler.reconcile(self.facts, SOURCE)

        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.ALREADY_PROCESSED)
        self.assertEqual(len(self.registry.updates), 1)
        self.notifier.send_pickup_code.assert_not_called()

    def test_unknown_number_with_dropoff_code_creates_record(self):
        outcome = self.reconciler.reconcile(self.facts, SOURCE)

        self.assertTrue(outcome.created)
        self.assertEqual(self.registry.inserts, [(TN, SOURCE)])
        stored = self.registry.get(outcome.record_id)
        self.assertEqual(stored.dropoff_code, "344924512")
        self.assertEqual(stored.email_used, SOURCE)
        self.notifier.send_pickup_code.assert_not_called()

    def test_both_codes_in_one_message(self):
        record = self.registry.add(TN, notification_channel_id="555")
        facts = EmailFacts(TN, pickup_code="247089", dropoff_code="344924512")

        outcome = self.reconciler.reconcile(facts, SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        stored = self.registry.get(record.record_id)
        self.assertEqual(stored.dropoff_code, "344924512")
        self.assertIsNotNone(stored.pickup_code_delivered_at)
        self.notifier.send_pickup_code.assert_called_once_with("555", TN, "247089", None)


class RecordCreationTest(unittest.TestCase):

    def setUp(self):
        self.registry = FakeRegistry()
        self.notifier = make_notifier()
        self.reconciler = CodeReconciler(self.registry, self.notifier)

    def test_no_tracking_number_changes_nothing(self):
        self.registry.add(TN, notification_channel_id="555")
        facts = EmailFacts(None, pickup_code="247089", dropoff_code="344924512")

        outcome = self.reconciler.reconcile(facts, SOURCE)

        self.assertEqual(outcome.reason, ProcessingOutcome.NO_TRACKING_NUMBER)
        self.assertEqual(self.registry.inserts, [])
        self.assertEqual(self.registry.updates, [])
        self.notifier.send_pickup_code.assert_not_called()

    def test_unknown_number_without_code_creates_nothing(self):
        outcome = self.reconciler.reconcile(EmailFacts(TN), SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.SKIPPED)
        self.assertEqual(outcome.reason, ProcessingOutcome.NO_MATCH)
        self.assertEqual(self.registry.inserts, [])

    def test_unknown_number_with_pickup_code_creates_record(self):
        outcome = self.reconciler.reconcile(EmailFacts(TN, pickup_code="247089"), SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        self.assertTrue(outcome.created)
        stored = self.registry.get(outcome.record_id)
        self.assertEqual(stored.email_used, SOURCE)
        self.assertIsNone(stored.owner_user_id)
        self.assertEqual(stored.pickup_code, "247089")
        self.assertIsNotNone(stored.pickup_code_delivered_at)
        self.notifier.send_pickup_code.assert_not_called()

    def test_without_source_account_nothing_is_created(self):
        outcome = self.reconciler.reconcile(EmailFacts(TN, pickup_code="247089"), None)
        self.assertEqual(outcome.reason, ProcessingOutcome.NO_MATCH)
        self.assertEqual(self.registry.inserts, [])

    def test_existing_record_without_code_is_skipped(self):
        self.registry.add(TN)
        outcome = self.reconciler.reconcile(EmailFacts(TN), SOURCE)
        self.assertEqual(outcome.reason, ProcessingOutcome.NO_CODE)
        self.assertFalse(outcome.is_settled())

    def test_concurrent_insert_is_resolved_by_re_reading(self):
        registry = self.registry

        def racing_insert(tracking_number, provenance=None):
            registry.add(tracking_number, notification_channel_id="777")
            raise DuplicateTrackingNumberError(tracking_number)

        registry.insert = racing_insert

        outcome = self.reconciler.reconcile(EmailFacts(TN, pickup_code="247089"), SOURCE)

        self.assertEqual(outcome.kind, ProcessingOutcome.PROCESSED)
        self.assertFalse(outcome.created)
        self.notifier.send_pickup_code.assert_called_once_with("777", TN, "247089", None)

    def test_claimed_number_is_reported_in_flight(self):
        self.registry.add(TN, notification_channel_id="555")
        facts = EmailFacts(TN, pickup_code="247089")

        self.assertTrue(self.reconciler._claim(TN))
        outcome = self.reconciler.reconcile(facts, SOURCE)
        self.assertEqual(outcome.reason, ProcessingOutcome.IN_FLIGHT)
        self.notifier.send_pickup_code.assert_not_called()

        self.reconciler._release(TN)
        self.assertEqual(self.reconciler.reconcile(facts, SOURCE).kind, ProcessingOutcome.PROCESSED)


class RetryPendingDeliveriesTest(unittest.TestCase):

    def setUp(self):
        self.registry = FakeRegistry()
        self.notifier = make_notifier()
        self.reconciler = CodeReconciler(self.registry, self.notifier)

    def test_stored_code_is_resent_from_registry(self):
        record = self.registry.add(TN, notification_channel_id="555", pickup_code="012345",
                                   pickup_code_location="GLA01M")

        delivered = self.reconciler.retry_pending_deliveries()

        self.assertEqual(delivered, 1)
        self.notifier.send_pickup_code.assert_called_once_with("555", TN, "012345", "GLA01M")
        self.assertIsNotNone(self.registry.get(record.record_id).pickup_code_delivered_at)

    def test_failed_retry_stays_pending(self):
        record = self.registry.add(TN, notification_channel_id="555", pickup_code="012345")
        self.notifier.send_pickup_code.return_value = False

        self.assertEqual(self.reconciler.retry_pending_deliveries(), 0)
        self.assertIsNone(self.registry.get(record.record_id).pickup_code_delivered_at)

    def test_duplicated_rows_are_not_retried(self):
        self.registry.add(TN, notification_channel_id="1", pickup_code="012345")
        self.registry.add(TN, notification_channel_id="2", pickup_code="012345")

        self.assertEqual(self.reconciler.retry_pending_deliveries(), 0)
        self.notifier.send_pickup_code.assert_not_called()

    def test_nothing_pending(self):
        self.registry.add(TN, notification_channel_id="555", pickup_code="012345",
                          pickup_code_delivered_at="2025-01-01 10:00:00")
        self.assertEqual(self.reconciler.retry_pending_deliveries(), 0)
        self.notifier.send_pickup_code.assert_not_called()


if __name__ == "__main__":
    unittest.main()
