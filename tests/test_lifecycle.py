import threading
import unittest

from support import IsolatedStorageMixin, make_upload

MINUTE = 60 * 1000
HOUR = 60 * MINUTE
DAY = 24 * HOUR
NOW = 1_700_000_000_000


class LifecycleTestCase(IsolatedStorageMixin, unittest.TestCase):
    store_backend = "memory"

    def setUp(self):
        super().setUp()
        self.storage = self.load("fadedrop.storage")
        self.records = self.load("fadedrop.records")
        self.lifecycle_module = self.load("fadedrop.lifecycle")
        self.security = self.load("fadedrop.security")
        self.media = self.storage.MediaStorage()
        self.store = self.records.create_record_store(self.store_backend)
        self.clock = [NOW]
        self.lifecycle = self.lifecycle_module.UploadLifecycle(
            self.store,
            self.media,
            minutes_enabled=True,
            clock=lambda: self.clock[0],
        )

    def tearDown(self):
        self.media.drain(timeout=5)
        self.media.shutdown(wait=True)
        super().tearDown()

    def create(self, media_type="images", files=None, value="1", unit="hours", password=None):
        if files is None:
            files = {"images": [make_upload("one.png", content_type="image/png"), make_upload("two.jpg", content_type="image/jpeg")]}
        return self.lifecycle.create_upload(files, media_type, value, unit, password)

    def stored(self, upload_id):
        return self.store.find_by_id(upload_id)


class CreateUploadTests(LifecycleTestCase):
    def test_creation_sets_timestamps_and_defaults(self):
        record = self.create()
        grace = self.storage.GRACE_PERIOD_MS
        expiration = record["expiration"]
        self.assertEqual(expiration["expires_at"] - record["created_at"], expiration["duration_ms"])
        self.assertEqual(expiration["duration_ms"], HOUR)
        self.assertEqual(expiration["auto_delete_at"] - expiration["expires_at"], grace)
        self.assertEqual(record["view_count"], 0)
        self.assertIsNone(record["max_views"])
        self.assertIsNone(record["password"])
        self.assertFalse(record["deleted"])
        self.assertEqual(len(record["files"]), 2)
        self.assertEqual(self.stored(record["id"])["dashboard_key"], record["dashboard_key"])

        for meta in record["files"]:
            self.assertEqual(meta["field_name"], "images")
            self.assertTrue(meta["stored_path"].startswith(str(self.uploads_dir / "images")))
            self.assertRegex(meta["stored_filename"], r"^\d+-[0-9a-f]{24}\.(png|jpg)$")
        self.assertEqual(len(self.stored_files()), 2)

    def test_password_is_hashed_with_version(self):
        record = self.create(password="  hunter2 ")
        self.assertTrue(record["password_version"])
        self.assertTrue(self.security.verify_password("hunter2", record["password"]))

    def test_blank_password_means_unprotected(self):
        record = self.create(password="   ")
        self.assertIsNone(record["password"])
        self.assertIsNone(record["password_version"])

    def test_video_and_audio_counts(self):
        video = self.create("video", {"video": [make_upload("clip.mp4", content_type="video/mp4")]})
        self.assertEqual(video["media_type"], "video")
        audio = self.create(
            "audio",
            {"audio": [make_upload("a.mp3", content_type="audio/mpeg"), make_upload("b.flac")]},
        )
        self.assertEqual(len(audio["files"]), 2)

        with self.assertRaises(self.lifecycle_module.UploadValidationError) as ctx:
            self.create("video", {"video": [make_upload("a.mp4"), make_upload("b.mp4")]})
        self.assertEqual(ctx.exception.reason, "file_count")

    def assertRejected(self, reason, **kwargs):
        with self.assertRaises(self.lifecycle_module.UploadValidationError) as ctx:
            self.create(**kwargs)
        self.assertEqual(ctx.exception.reason, reason)
        payload = ctx.exception.to_payload()
        self.assertEqual(payload["reason"], reason)
        self.assertIn("error", payload)
        self.media.drain(timeout=5)
        self.assertEqual(self.stored_files(), [])
        self.assertEqual(self.store.count(), 0)

    def test_validation_failures_leave_no_files(self):
        self.assertRejected("media_type", media_type="documents")
        self.assertRejected("no_files", files={})
        self.assertRejected("file_count", files={"images": [make_upload(f"{i}.png") for i in range(11)]})
        self.assertRejected(
            "mixed_media",
            files={"images": [make_upload("a.png")], "audio": [make_upload("b.mp3")]},
        )
        self.assertRejected("file_type", files={"images": [make_upload("notes.txt", content_type="text/plain")]})
        self.assertRejected("file_type", files={"images": [make_upload("photo.png", content_type="text/html")]})
        self.assertRejected("expiration_unit", unit="weeks")
        self.assertRejected("expiration_value", value="1.5")
        self.assertRejected("expiration_value", value="-2")
        self.assertRejected("expiration_range", value="31", unit="days")
        self.assertRejected("expiration_range", value="0")

    def test_oversized_file_is_removed(self):
        limit = self.lifecycle_module.MEDIA_RULES["images"]["max_bytes"]
        files = {
            "images": [
                make_upload("small.png", b"ok"),
                make_upload("huge.png", b"x" * (limit + 1)),
            ]
        }
        self.assertRejected("file_size", files=files)

    def test_minutes_unit_requires_flag(self):
        record = self.create(value="1", unit="minutes")
        self.assertEqual(record["expiration"]["duration_ms"], MINUTE)

        self.lifecycle.minutes_enabled = False
        self.assertRejectedKeepsStore("expiration_unit", value="5", unit="minutes")

    def test_non_ascii_digits_are_rejected_as_malformed(self):
        for value in ("\u00b2", "\u00b9\u00b2", "\u0661", "\uff13"):
            self.assertRejectedKeepsStore("expiration_value", value=value, unit="hours")
        self.assertEqual(self.stored_files(), [])

    def assertRejectedKeepsStore(self, reason, **kwargs):
        before = self.store.count()
        with self.assertRaises(self.lifecycle_module.UploadValidationError) as ctx:
            self.create(**kwargs)
        self.assertEqual(ctx.exception.reason, reason)
        self.assertEqual(self.store.count(), before)

    def test_failed_persistence_cleans_up_files(self):
        def broken_insert(record):
            raise RuntimeError("database offline")

        self.store.insert = broken_insert
        with self.assertLogs("fadedrop.lifecycle", level="ERROR"):
            with self.assertRaises(RuntimeError):
                self.create()
        self.media.drain(timeout=5)
        self.assertEqual(self.stored_files(), [])


class ViewerAccessTests(LifecycleTestCase):
    def test_successful_views_count_exactly_once(self):
        record = self.create()
        for expected in range(1, 4):
            outcome = self.lifecycle.record_view(record["id"])
            self.assertEqual(outcome.status, "ok")
            self.assertEqual(outcome.record["view_count"], expected)
            self.assertEqual(len(outcome.files), 2)
        self.assertEqual(self.stored(record["id"])["view_count"], 3)

    def test_unknown_upload(self):
        self.assertEqual(self.lifecycle.record_view("nope").status, "not_found")

    def test_password_gate_does_not_count(self):
        record = self.create(password="hunter2")
        self.assertEqual(self.lifecycle.record_view(record["id"]).status, "password_required")

        ok, error, token, _ = self.lifecycle.unlock_view(record["id"], "wrong")
        self.assertFalse(ok)
        self.assertEqual(error, "invalid")
        self.assertIsNone(token)

        ok, error, token, max_age = self.lifecycle.unlock_view(record["id"], "hunter2")
        self.assertTrue(ok)
        self.assertGreaterEqual(max_age, 60)
        version = self.security.read_viewer_token(record["id"], token)
        self.assertEqual(self.lifecycle.record_view(record["id"], version).status, "ok")
        self.assertEqual(self.stored(record["id"])["view_count"], 1)

    def test_view_limit_blocks_after_limit(self):
        record = self.create()
        self.assertEqual(
            self.lifecycle.set_max_views(record["id"], record["dashboard_key"], "set", "1"),
            (True, "updated"),
        )
        self.assertEqual(self.lifecycle.record_view(record["id"]).status, "ok")
        self.assertEqual(self.lifecycle.record_view(record["id"]).status, "view_limit")
        self.assertEqual(self.stored(record["id"])["view_count"], 1)

        self.lifecycle.set_max_views(record["id"], record["dashboard_key"], "remove")
        self.assertEqual(self.stored(record["id"])["view_count"], 1)
        self.assertEqual(self.lifecycle.record_view(record["id"]).status, "ok")

    def test_expired_then_auto_deleted(self):
        record = self.create()
        self.clock[0] = record["expiration"]["expires_at"]
        self.assertEqual(self.lifecycle.record_view(record["id"]).status, "expired")

        self.clock[0] = record["expiration"]["auto_delete_at"]
        outcome = self.lifecycle.record_view(record["id"])
        self.assertEqual(outcome.status, "deleted")
        self.assertEqual(outcome.record["deleted_reason"], "auto")
        self.assertEqual(self.stored(record["id"])["view_count"], 0)
        self.media.drain(timeout=5)
        self.assertEqual(self.stored_files(), [])

    def test_media_access_follows_gates_but_not_view_limit(self):
        record = self.create(password="hunter2")
        stored_name = record["files"][0]["stored_filename"]
        self.assertIsNone(self.lifecycle.media_for_viewer(record["id"], stored_name))

        _, _, token, _ = self.lifecycle.unlock_view(record["id"], "hunter2")
        version = self.security.read_viewer_token(record["id"], token)
        meta = self.lifecycle.media_for_viewer(record["id"], stored_name, version)
        self.assertEqual(meta["stored_filename"], stored_name)
        self.assertIsNone(self.lifecycle.media_for_viewer(record["id"], "other.png", version))

        self.lifecycle.set_max_views(record["id"], record["dashboard_key"], "set", "1")
        self.lifecycle.record_view(record["id"], version)
        self.assertIsNotNone(self.lifecycle.media_for_viewer(record["id"], stored_name, version))
        self.assertEqual(self.stored(record["id"])["view_count"], 1)

    def test_concurrent_views_never_exceed_limit(self):
        record = self.create()
        self.lifecycle.set_max_views(record["id"], record["dashboard_key"], "set", "3")
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(12)

        def viewer():
            barrier.wait()
            outcome = self.lifecycle.record_view(record["id"])
            with results_lock:
                results.append(outcome.status)

        threads = [threading.Thread(target=viewer) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("ok"), 3)
        self.assertEqual(results.count("view_limit"), 9)
        self.assertEqual(self.stored(record["id"])["view_count"], 3)


class SqliteViewerAccessTests(LifecycleTestCase):
    store_backend = "sqlite"

    def test_concurrent_views_never_exceed_limit(self):
        ViewerAccessTests.test_concurrent_views_never_exceed_limit(self)

    def test_view_limit_blocks_after_limit(self):
        ViewerAccessTests.test_view_limit_blocks_after_limit(self)


class DashboardOperationTests(LifecycleTestCase):
    def setUp(self):
        super().setUp()
        self.record = self.create()
        self.upload_id = self.record["id"]
        self.key = self.record["dashboard_key"]

    def test_snapshot_requires_key(self):
        snapshot = self.lifecycle.dashboard_snapshot(self.upload_id, self.key)
        self.assertEqual(snapshot["status"], "Active")
        with self.assertLogs("fadedrop.lifecycle", level="WARNING") as logs:
            self.assertIsNone(self.lifecycle.dashboard_snapshot(self.upload_id, "wrong"))
            self.assertIsNone(self.lifecycle.dashboard_snapshot("unknown", self.key))
        self.assertEqual(len([line for line in logs.output if "dashboard_unauthorized" in line]), 2)
        self.assertIn(f"upload_id={self.upload_id}", logs.output[0])

    def test_status_labels(self):
        self.lifecycle.set_max_views(self.upload_id, self.key, "set", "1")
        self.lifecycle.record_view(self.upload_id)
        self.assertEqual(self.lifecycle.dashboard_snapshot(self.upload_id, self.key)["status"], "View limit reached")

        self.clock[0] = self.record["expiration"]["expires_at"] + 1
        self.assertEqual(self.lifecycle.dashboard_snapshot(self.upload_id, self.key)["status"], "Expired")

        self.clock[0] = self.record["expiration"]["auto_delete_at"]
        snapshot = self.lifecycle.dashboard_snapshot(self.upload_id, self.key)
        self.assertEqual(snapshot["status"], "Automatically deleted")
        self.assertTrue(snapshot["deleted"])

    def test_every_mutation_rejects_wrong_key_without_changes(self):
        before = self.stored(self.upload_id)
        with self.assertLogs("fadedrop.lifecycle", level="WARNING") as logs:
            results = [
                self.lifecycle.extend_expiration(self.upload_id, "bad", str(HOUR)),
                self.lifecycle.set_max_views(self.upload_id, "bad", "set", "4"),
                self.lifecycle.set_password(self.upload_id, "bad", "set", "pw"),
                self.lifecycle.set_countdown_visibility(self.upload_id, "bad", "show"),
                self.lifecycle.manual_delete(self.upload_id, "bad"),
                self.lifecycle.manual_delete("missing", self.key),
            ]
        self.assertEqual(results, [(False, "unauthorized")] * 6)
        self.assertEqual(len(logs.output), 6)
        self.assertEqual(self.stored(self.upload_id), before)

    def test_extend_expiration(self):
        self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, str(DAY)), (True, "extended"))
        stored = self.stored(self.upload_id)
        self.assertEqual(stored["expiration"]["expires_at"], self.record["expiration"]["expires_at"] + DAY)
        self.assertEqual(stored["expiration"]["duration_ms"], HOUR + DAY)

        self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, "12345"), (False, "invalid"))
        self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, "soon"), (False, "invalid"))
        self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, str(30 * DAY)), (False, "tooFar"))
        for value in ("\u00b9", "\u00b2\u00b3"):
            self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, value), (False, "invalid"))

    def test_view_limit_validation(self):
        for value in ("0", "abc", "1.5", "100001", "", None, "\u00b2", "\u0663"):
            self.assertEqual(self.lifecycle.set_max_views(self.upload_id, self.key, "set", value), (False, "invalid"))
        self.assertEqual(self.lifecycle.set_max_views(self.upload_id, self.key, "bogus", "3"), (False, "invalid"))
        self.assertEqual(self.lifecycle.set_max_views(self.upload_id, self.key, "set", "100000"), (True, "updated"))
        self.assertEqual(self.lifecycle.set_max_views(self.upload_id, self.key, "remove"), (True, "removed"))
        self.assertIsNone(self.stored(self.upload_id)["max_views"])

    def test_password_lifecycle(self):
        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "set", "   "), (False, "empty"))
        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "set", "first"), (True, "updated"))
        first_version = self.stored(self.upload_id)["password_version"]

        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "change", "second"), (False, "current_required"))
        self.assertEqual(
            self.lifecycle.set_password(self.upload_id, self.key, "set", "second", "nope"),
            (False, "current_invalid"),
        )
        self.assertEqual(
            self.lifecycle.set_password(self.upload_id, self.key, "change", "second", "first"),
            (True, "updated"),
        )
        second_version = self.stored(self.upload_id)["password_version"]
        self.assertNotEqual(first_version, second_version)
        self.assertEqual(self.lifecycle.record_view(self.upload_id, first_version).status, "password_required")
        self.assertEqual(self.lifecycle.record_view(self.upload_id, second_version).status, "ok")

        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "remove"), (False, "current_required"))
        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "remove", None, "second"), (True, "removed"))
        stored = self.stored(self.upload_id)
        self.assertIsNone(stored["password"])
        self.assertIsNone(stored["password_version"])
        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "rotate", "x"), (False, "invalid"))

    def test_countdown_visibility(self):
        self.assertEqual(self.lifecycle.set_countdown_visibility(self.upload_id, self.key, "show"), (True, "updated"))
        self.assertTrue(self.stored(self.upload_id)["countdown_visible"])
        self.assertEqual(self.lifecycle.set_countdown_visibility(self.upload_id, self.key, " hide "), (True, "updated"))
        self.assertFalse(self.stored(self.upload_id)["countdown_visible"])
        self.assertEqual(self.lifecycle.set_countdown_visibility(self.upload_id, self.key, "blink"), (False, "invalid"))

    def test_manual_delete_is_terminal_and_idempotent(self):
        self.lifecycle.set_password(self.upload_id, self.key, "set", "secret")
        self.lifecycle.set_max_views(self.upload_id, self.key, "set", "5")
        self.assertEqual(self.lifecycle.manual_delete(self.upload_id, self.key), (True, "deleted"))
        stored = self.stored(self.upload_id)
        self.assertEqual(stored["deleted_reason"], "manual")
        self.assertEqual(stored["deleted_at"], NOW)
        self.assertIsNone(stored["password"])
        self.assertIsNone(stored["password_version"])
        self.assertIsNone(stored["max_views"])

        self.clock[0] = NOW + 5000
        self.assertEqual(self.lifecycle.manual_delete(self.upload_id, self.key), (True, "alreadyDeleted"))
        self.assertEqual(self.stored(self.upload_id)["deleted_at"], NOW)
        self.assertEqual(self.lifecycle.dashboard_snapshot(self.upload_id, self.key)["status"], "Deleted by uploader")

        self.assertEqual(self.lifecycle.extend_expiration(self.upload_id, self.key, str(HOUR)), (False, "deleted"))
        self.assertEqual(self.lifecycle.set_max_views(self.upload_id, self.key, "set", "3"), (False, "deleted"))
        self.assertEqual(self.lifecycle.set_password(self.upload_id, self.key, "set", "again"), (False, "deleted"))
        self.assertEqual(self.lifecycle.set_countdown_visibility(self.upload_id, self.key, "show"), (False, "deleted"))
        stored = self.stored(self.upload_id)
        self.assertIsNone(stored["password"])
        self.assertIsNone(stored["max_views"])

        self.assertEqual(self.lifecycle.record_view(self.upload_id).status, "deleted")
        self.media.drain(timeout=5)
        self.assertEqual(self.stored_files(), [])


if __name__ == "__main__":
    unittest.main()
