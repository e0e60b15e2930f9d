"""Test that the project setup is working correctly."""

import whale_tracker


def test_version() -> None:
    """Test that version is defined."""
    assert whale_tracker.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from whale_tracker import chain
    from whale_tracker import pricing
    from whale_tracker import storage
    from whale_tracker import wallets
    from whale_tracker import indexer

    # Just verify imports work
    assert chain is not None
    assert pricing is not None
    assert storage is not None
    assert wallets is not None
    assert indexer is not None
