"""Tests for the global identifier codec.

Covers:
- encode/decode of local and qualified GIDs
- Network addresses containing '-'
- Malformed input decodes to (None, None, None)
- Address canonicalization (scheme, www., trailing slash)
- qualify/localize at the network boundary
"""

from contentsync.sync import gid


class TestEncodeDecode:
    """Tests for encode() and decode()."""

    def test_local_gid(self):
        assert gid.encode(1, 10) == "1-10"
        assert gid.decode("1-10") == (1, 10, None)

    def test_qualified_gid(self):
        assert gid.encode(1, 10, "https://www.net-a.example/") == "1-10-net-a.example"
        assert gid.decode("1-10-net-a.example") == (1, 10, "net-a.example")

    def test_address_with_path_keeps_separators(self):
        """Only the first two '-' split the GID."""
        assert gid.decode("3-42-sites.example/sub-site") == (3, 42, "sites.example/sub-site")

    def test_decode_canonicalizes_address(self):
        assert gid.decode("1-10-https://www.net-b.example/") == (1, 10, "net-b.example")

    def test_malformed_inputs(self):
        for value in (None, "", "abc", "1", "x-10", "1-y", 12, "-1-2"):
            assert gid.decode(value) == (None, None, None), value

    def test_empty_address_is_local(self):
        assert gid.encode(2, 5, "") == "2-5"
        assert gid.encode(2, 5, None) == "2-5"


class TestValidity:
    """Tests for is_valid_gid(), gids_equal() and is_remote()."""

    def test_valid_formats(self):
        assert gid.is_valid_gid("1-10")
        assert gid.is_valid_gid("1-10-net-b.example")
        assert not gid.is_valid_gid("1-")
        assert not gid.is_valid_gid("one-10")
        assert not gid.is_valid_gid(None)

    def test_equal_after_canonicalization(self):
        assert gid.gids_equal("1-10-net-b.example", "1-10-https://www.net-b.example/")
        assert not gid.gids_equal("1-10", "1-11")
        assert not gid.gids_equal("1-10", "1-10-net-b.example")

    def test_malformed_never_equal(self):
        assert not gid.gids_equal("bad", "bad")

    def test_is_remote(self):
        assert gid.is_remote("1-10-net-b.example")
        assert not gid.is_remote("1-10")


class TestNetworkBoundary:
    """Tests for qualify() and localize()."""

    def test_qualify_local(self):
        assert gid.qualify("1-10", "https://net-a.example") == "1-10-net-a.example"

    def test_qualify_keeps_foreign_address(self):
        assert gid.qualify("1-10-net-b.example", "net-a.example") == "1-10-net-b.example"

    def test_localize_own_address(self):
        assert gid.localize("1-10-net-a.example", "https://net-a.example/") == "1-10"

    def test_localize_keeps_foreign_address(self):
        assert gid.localize("1-10-net-b.example", "net-a.example") == "1-10-net-b.example"

    def test_round_trip_through_peer(self):
        qualified = gid.qualify("4-99", "net-a.example")
        assert gid.localize(qualified, "net-a.example") == "4-99"

    def test_malformed_passes_through(self):
        assert gid.qualify("garbage", "net-a.example") == "garbage"
        assert gid.localize("garbage", "net-a.example") == "garbage"


class TestCanonicalizeAddress:
    """Tests for canonicalize_address()."""

    def test_strips_scheme_and_www(self):
        assert gid.canonicalize_address("http://www.Example.org/") == "Example.org"
        assert gid.canonicalize_address("https://example.org/sub/") == "example.org/sub"

    def test_empty(self):
        assert gid.canonicalize_address(None) == ""
        assert gid.canonicalize_address("") == ""
