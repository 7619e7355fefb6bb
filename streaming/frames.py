"""Reassemble blank-line delimited event frames from raw stream chunks."""
import codecs

FRAME_DELIMITER = "\n\n"


class FrameParser:
    """
    Incremental frame parser for one stream connection.

    Bytes are decoded with an incremental UTF-8 decoder, so a multi-byte
    character split across two chunks is decoded once both halves arrive.
    The buffer only ever holds the text after the last complete frame.
    Create a new parser per connection.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """
        Consume one chunk and return every frame it completes, in order.

        Whitespace-only frames are dropped.
        """
        text = self._decoder.decode(chunk)
        if not text:
            return []
        return self._split(self._buffer + text)

    def close(self) -> list[str]:
        """
        Flush the decoder at end of stream.

        Returns the trailing text as a final frame when the server closed the
        connection without a closing blank line.
        """
        frames = self._split(self._buffer + self._decoder.decode(b"", final=True))
        tail, self._buffer = self._buffer, ""
        if tail.strip():
            frames.append(tail.strip("\n"))
        return frames

    def _split(self, text: str) -> list[str]:
        # A "\r" left at the end of the buffer pairs with a "\n" from the
        # next chunk, so normalizing the whole buffer each time is enough.
        text = text.replace("\r\n", "\n")
        *complete, self._buffer = text.split(FRAME_DELIMITER)
        return [frame for frame in complete if frame.strip()]
