"""Receive side of a TCP connection: the receive buffer and out-of-order queue.

``tsk`` arguments must provide ``rcv_nxt``, ``rcv_wnd``, ``rcv_buf``,
``rcv_reass`` (a list), ``flags`` and ``recv_notify()``.
"""

from __future__ import annotations

from dataclasses import dataclass

from .cbuf import CircularBuffer
from .headers import TCP_F_ACKDELAY, TCP_F_ACKNOW, TCP_F_PUSH

TCP_TIMER_DELTA = 200000  # microseconds
TCP_MSL = 1000000
TCP_TIMEWAIT_TIMEOUT = 2 * TCP_MSL


@dataclass
class _Fragment:
    """Out-of-order text waiting for the gap before it to fill."""

    seq: int
    data: bytes

    @property
    def end(self) -> int:
        return self.seq + len(self.data)


def _adjacent_head(seg, nseq: int) -> bool:
    """Cut off text before ``nseq``; False when nothing is left."""
    if nseq > seg.seq:
        skip = nseq - seg.seq
        if seg.dlen <= skip:
            return False
        seg.dlen -= skip
        seg.text = seg.text[skip:]
        seg.seq = nseq
    return True


def write_buf(tsk, data) -> int:
    """Append in-order text to the receive buffer; return the bytes taken."""
    if tsk.rcv_buf is None:
        tsk.rcv_buf = CircularBuffer(max(tsk.rcv_wnd, 0))
    count = tsk.rcv_buf.write(data)
    if count > 0:
        tsk.rcv_wnd -= count
        tsk.rcv_nxt += count
    return count


def free_buf(tsk) -> None:
    tsk.rcv_buf = None


def free_reass(tsk) -> None:
    tsk.rcv_reass.clear()


def segment_reass(tsk, seg) -> None:
    """Queue out-of-order text and move whatever became in order to the buffer."""
    queue = tsk.rcv_reass
    index = next((i for i, frag in enumerate(queue) if seg.seq < frag.seq), len(queue))
    if index and not _adjacent_head(seg, queue[index - 1].end):
        return
    while index < len(queue):
        frag = queue[index]
        if seg.seq + seg.dlen < frag.end:
            if seg.seq + seg.dlen > frag.seq:
                seg.dlen = frag.seq - seg.seq
                seg.text = seg.text[:seg.dlen]
            break
        # the new segment covers this one completely
        del queue[index]
    if seg.dlen <= 0:
        return
    queue.insert(index, _Fragment(seg.seq, bytes(seg.text[:seg.dlen])))

    written = 0
    while queue and queue[0].seq <= tsk.rcv_nxt:
        frag = queue[0]
        data = frag.data[tsk.rcv_nxt - frag.seq:]
        if not data:
            queue.pop(0)
            continue
        count = write_buf(tsk, data)
        if count <= 0:
            break
        written += count
        if count < len(data):
            queue[0] = _Fragment(tsk.rcv_nxt, data[count:])
            break
        queue.pop(0)
    if written and seg.tcp.psh:
        tsk.flags |= TCP_F_PUSH


def recv_text(tsk, seg) -> None:
    """Accept the text of an acceptable segment into the receive window."""
    if tsk.rcv_wnd and _adjacent_head(seg, tsk.rcv_nxt):
        if tsk.rcv_nxt == seg.seq and not tsk.rcv_reass:
            count = write_buf(tsk, seg.text[:seg.dlen])
            if count > 0 and seg.tcp.psh:
                tsk.flags |= TCP_F_PUSH
            tsk.flags |= TCP_F_ACKDELAY
        else:
            segment_reass(tsk, seg)
            tsk.flags |= TCP_F_ACKNOW
    if tsk.flags & TCP_F_PUSH:
        tsk.recv_notify()