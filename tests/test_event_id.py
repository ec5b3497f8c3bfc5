"""
Event identity extraction tests - platform ids and the bucketed fallback hash.
"""
import copy

from webhook_intake.utils.event_id import (
    TIMESTAMP_BUCKET_MS,
    canonical_json,
    extract_event_id,
    fallback_event_id,
    normalize_payload,
    time_bucket,
)

# A time well inside a bucket (bucket boundaries are multiples of 300s)
T0 = 1_760_000_130.0


class TestPlatformIds:
    def test_facebook_message_mid(self):
        payload = {"object": "page", "entry": [{"id": "PAGE_1", "messaging": [{"message": {"mid": "m_fb_1"}}]}]}
        assert extract_event_id("facebook", payload) == "m_fb_1"

    def test_facebook_falls_back_to_entry_id(self):
        payload = {"object": "page", "entry": [{"id": "PAGE_1", "messaging": [{"read": {"watermark": 1}}]}]}
        assert extract_event_id("facebook", payload) == "PAGE_1"

    def test_instagram_message_mid(self, instagram_message_payload):
        assert extract_event_id("instagram", instagram_message_payload) == "aWdfZAG1faXRlbToxOklHTWVzc2FnZAUlEOjE3"

    def test_instagram_scans_all_messaging_items(self):
        payload = {"entry": [{"id": "IG_1", "messaging": [
            {"delivery": {"watermark": 1}},
            {"reaction": {"mid": "m_react", "reaction": "love"}},
        ]}]}
        assert extract_event_id("instagram", payload) == "m_react"

    def test_instagram_postback_and_edit_mids(self):
        postback = {"entry": [{"id": "IG_1", "messaging": [{"postback": {"mid": "m_pb", "payload": "BOOK"}}]}]}
        edit = {"entry": [{"id": "IG_1", "messaging": [{"message_edit": {"mid": "m_edit", "num_edit": 1}}]}]}
        assert extract_event_id("instagram", postback) == "m_pb"
        assert extract_event_id("instagram", edit) == "m_edit"

    def test_instagram_changes_messages_field(self):
        payload = {"entry": [{"id": "IG_1", "changes": [
            {"field": "comments", "value": {"id": "c_1"}},
            {"field": "messages", "value": {"message": {"mid": "m_change"}}},
        ]}]}
        assert extract_event_id("instagram", payload) == "m_change"

    def test_instagram_later_entry_in_batch(self):
        payload = {"entry": [
            {"id": "IG_1", "messaging": []},
            {"id": "IG_1", "messaging": [{"message": {"mid": "m_second"}}]},
        ]}
        assert extract_event_id("instagram", payload) == "m_second"

    def test_instagram_entry_id_fallback(self):
        payload = {"entry": [{"id": "IG_1", "messaging": [{"read": {"watermark": 5}}]}]}
        assert extract_event_id("instagram", payload) == "IG_1"

    def test_whatsapp_message_id(self, whatsapp_message_payload):
        assert extract_event_id("whatsapp", whatsapp_message_payload) == "wamid.HBgLOTE5ODAwMDAwMDAwFQIAEhgg"

    def test_razorpay_payment_entity_id(self, razorpay_capture_payload):
        assert extract_event_id("razorpay", razorpay_capture_payload) == "pay_ABC123"

    def test_razorpay_payment_link_entity_id(self):
        payload = {"event": "payment_link.paid", "payload": {"payment_link": {"entity": {"id": "plink_1"}}}}
        assert extract_event_id("razorpay", payload) == "plink_1"

    def test_paypal_event_id(self, paypal_capture_payload):
        assert extract_event_id("paypal", paypal_capture_payload) == "WH-58D329510W468432D-8HN650336L201105X"

    def test_paypal_resource_id_fallback(self):
        assert extract_event_id("paypal", {"resource": {"id": "CAP_1"}}) == "CAP_1"

    def test_numeric_ids_become_strings(self):
        payload = {"entry": [{"id": 12345, "messaging": []}]}
        assert extract_event_id("facebook", payload) == "12345"


class TestFallbackHash:
    def test_missing_ids_use_fallback(self):
        payload = {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {"statuses": [{"id": "s"}]}}]}]}
        event_id = extract_event_id("whatsapp", payload, now=T0)
        assert event_id == fallback_event_id(payload, now=T0)
        assert len(event_id) == 64

    def test_same_content_same_bucket_same_id(self):
        payload = {"event": "order.paid", "payload": {"order": {"amount": 100}}}
        assert fallback_event_id(payload, now=T0) == fallback_event_id(copy.deepcopy(payload), now=T0 + 60)

    def test_key_order_does_not_matter(self):
        a = {"b": 1, "a": {"y": 2, "x": 3}}
        b = {"a": {"x": 3, "y": 2}, "b": 1}
        assert fallback_event_id(a, now=T0) == fallback_event_id(b, now=T0)

    def test_volatile_fields_ignored_at_any_depth(self):
        a = {"event": "x", "created_at": 1, "nested": {"timestamp": 10, "value": "v"}}
        b = {"event": "x", "created_at": 2, "nested": {"timestamp": 99, "value": "v", "received_at": "now"}}
        assert fallback_event_id(a, now=T0) == fallback_event_id(b, now=T0)

    def test_different_content_different_id(self):
        assert fallback_event_id({"a": 1}, now=T0) != fallback_event_id({"a": 2}, now=T0)

    def test_next_bucket_new_id(self):
        payload = {"a": 1}
        later = T0 + TIMESTAMP_BUCKET_MS / 1000
        assert fallback_event_id(payload, now=T0) != fallback_event_id(payload, now=later)

    def test_non_dict_payloads_hash(self):
        assert len(extract_event_id("razorpay", ["not", "an", "object"], now=T0)) == 64
        assert len(extract_event_id("paypal", None, now=T0)) == 64

    def test_unknown_provider_hashes(self):
        assert extract_event_id("stripe", {"id": "evt_1"}, now=T0) == fallback_event_id({"id": "evt_1"}, now=T0)


class TestNormalization:
    def test_drops_volatile_keys_in_lists(self):
        payload = {"items": [{"time": 1, "id": "a"}, {"updated_at": 2, "id": "b"}]}
        assert normalize_payload(payload) == {"items": [{"id": "a"}, {"id": "b"}]}

    def test_canonical_json_compact_and_sorted(self):
        assert canonical_json({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'

    def test_time_bucket_is_five_minutes(self):
        assert time_bucket(0) == 0
        assert time_bucket(299.999) == 0
        assert time_bucket(300) == 1
