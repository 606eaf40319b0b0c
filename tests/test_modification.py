from tagvault.managers.modification import ModificationTracker


def test_fresh_tracker_is_clean():
    tracker = ModificationTracker()
    assert not tracker.is_modified()
    assert not tracker.is_unsaved()
    assert list(tracker.modified_images()) == []


def test_core_modification_then_save():
    tracker = ModificationTracker()
    tracker.mark_core_dirty()
    assert tracker.is_modified()
    assert tracker.is_unsaved()

    tracker.mark_saved()
    assert tracker.is_modified()
    assert not tracker.is_unsaved()


def test_image_modifications_after_save_are_unsaved():
    tracker = ModificationTracker()
    tracker.mark_images_dirty(["pool"])
    tracker.mark_saved()

    tracker.mark_images_dirty(["pool"])
    assert tracker.is_unsaved()
    tracker.mark_saved()

    tracker.mark_images_dirty(["item"])
    assert tracker.is_unsaved()
    assert list(tracker.modified_images()) == ["pool", "item"]

    snapshot = tracker.snapshot()
    assert snapshot["current"].images == {"pool": 2, "item": 1}
    assert snapshot["saved"].images == {"pool": 2}


def test_listeners_receive_revisions_and_reset_clears():
    seen = []
    tracker = ModificationTracker(on_change=seen.append)
    tracker.mark_core_dirty()
    tracker.mark_images_dirty(["a", "b"])
    tracker.mark_saved()

    assert seen == [1, 2, 3]
    assert tracker.revision == 3

    tracker.reset()
    assert tracker.revision == 0
    assert not tracker.is_modified()
    assert tracker.snapshot()["saved"].core == 0
