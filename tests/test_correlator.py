# -*- coding: utf-8 -*-
from bulkgen.bulk.correlator import EventCorrelator
from bulkgen.domain.models import DRAFT, UPSCALE, RawMessage, Task


def _msg(mid, content, **kw):
    return RawMessage(id=mid, channel_id="c", content=content, **kw)


def test_nonce_then_message_id_then_final():
    c = EventCorrelator()
    task = Task(prompt_index=0, prompt="a cat", stage=DRAFT, token="n1")
    c.track(task)

    # waiting binds the message but is not an advance
    assert c.correlate(_msg("m1", "**a cat** - <@1> (Waiting to start)", nonce="n1")) is None
    assert task.message_id == "m1"

    update = c.correlate(_msg("m1", "**a cat** - <@1> (30%) (fast)"))
    assert update is not None
    assert update.task is task
    assert update.progress == 0.3
    assert not update.terminal

    # same level again is dropped
    assert c.correlate(_msg("m1", "**a cat** - <@1> (30%) (fast)")) is None

    final = c.correlate(_msg("m1", "**a cat** - <@1> (fast)",
                             attachments=["https://cdn/x.png"], buttons={"U1": "u1"}))
    assert final is not None
    assert final.terminal
    assert final.progress == 1.0
    assert final.urls == ["https://cdn/x.png"]
    assert final.buttons == {"U1": "u1"}
    assert c.outstanding() == []

    # redelivered final
    assert c.correlate(_msg("m1", "**a cat** - <@1> (fast)", attachments=["https://cdn/x.png"])) is None


def test_terminal_text_without_attachment_waits():
    c = EventCorrelator()
    task = Task(prompt_index=0, prompt="a cat", stage=DRAFT, token="n1")
    c.track(task)
    update = c.correlate(_msg("m1", "**a cat** - <@1> (fast)", nonce="n1"))
    assert update is not None
    assert not update.terminal
    assert update.progress == 0.99
    assert c.outstanding() == [task]


def test_text_match_by_prompt():
    c = EventCorrelator()
    cat = Task(prompt_index=0, prompt="a cat --ar 2:3", stage=DRAFT, token="n1", created_at=1.0)
    dog = Task(prompt_index=1, prompt="a dog", stage=DRAFT, token="n2", created_at=2.0)
    c.track(cat)
    c.track(dog)
    update = c.correlate(_msg("m9", "**<https://s.mj.run/abc> A Dog** - <@1> (12%) (relaxed)"))
    assert update is not None
    assert update.task is dog
    assert dog.message_id == "m9"


def test_upscale_matched_by_parent_and_quadrant():
    c = EventCorrelator()
    tasks = [
        Task(prompt_index=0, prompt="a cat", stage=UPSCALE, token=f"n{q}", quadrant=q,
             lineage=f"u{q}", parent_id="grid-1", custom_id=f"u{q}", created_at=float(q))
        for q in range(1, 5)
    ]
    for t in tasks:
        c.track(t)
    update = c.correlate(_msg("m5", "**a cat** - Image #3 <@1>", reference_id="grid-1",
                              attachments=["https://cdn/u3.png"]))
    assert update is not None
    assert update.task is tasks[2]
    assert update.terminal

    # another parent's upscale is not ours
    assert c.correlate(_msg("m6", "**a cat** - Image #1 <@1>", reference_id="grid-2",
                            attachments=["https://cdn/u1.png"])) is None


def test_unrelated_and_malformed_messages():
    c = EventCorrelator()
    c.track(Task(prompt_index=0, prompt="a cat", stage=DRAFT, token="n1"))
    assert c.correlate(_msg("m1", "random chatter")) is None
    assert c.correlate(_msg("m2", "**a horse** - <@1> (50%)")) is None
    assert len(c.outstanding()) == 1


def test_out_of_order_progress_is_dropped():
    c = EventCorrelator()
    task = Task(prompt_index=0, prompt="a cat", stage=DRAFT, token="n1")
    c.track(task)
    c.correlate(_msg("m1", "**a cat** - <@1> (Waiting to start)", nonce="n1"))

    first = c.correlate(_msg("m1", "**a cat** - <@1> (50%) (fast)"))
    assert first is not None and first.progress == 0.5
    # an older edit delivered late, then the same level again
    assert c.correlate(_msg("m1", "**a cat** - <@1> (25%) (fast)")) is None
    assert c.correlate(_msg("m1", "**a cat** - <@1> (50%) (fast)")) is None
    assert task.progress == 0.5


def test_final_posted_as_new_message():
    c = EventCorrelator()
    task = Task(prompt_index=0, prompt="a cat", stage=DRAFT, token="n1")
    c.track(task)
    c.correlate(_msg("m1", "**a cat** - <@1> (Waiting to start)", nonce="n1"))
    assert c.correlate(_msg("m1", "**a cat** - <@1> (50%) (fast)")) is not None

    final = c.correlate(_msg("m2", "**a cat** - <@1> (fast)", event="MESSAGE_CREATE",
                             attachments=["https://cdn/x.png"], buttons={"U1": "u1"}))
    assert final is not None
    assert final.task is task
    assert final.terminal
    assert final.message_id == "m2"
    assert task.message_id == "m2"
    assert c.outstanding() == []
