from photostyle.errors import (
    ErrorKind,
    ImageDecodeFailed,
    InsufficientCredits,
    InvalidResponse,
    TransferTimeout,
    NetworkError,
    recovery_action,
    user_message,
)

def test_every_kind_has_a_message():
    for kind in ErrorKind:
        assert user_message(kind)

def test_only_insufficient_credits_offers_purchase():
    assert recovery_action(ErrorKind.INSUFFICIENT_CREDITS) == "purchase_credits"
    assert {recovery_action(k) for k in ErrorKind if k is not ErrorKind.INSUFFICIENT_CREDITS} == {"retry"}

def test_kinds_on_exceptions():
    assert ImageDecodeFailed().kind == ErrorKind.INVALID_RESPONSE
    assert isinstance(ImageDecodeFailed(), InvalidResponse)
    assert TransferTimeout().kind == ErrorKind.TIMEOUT
    assert isinstance(TransferTimeout(), NetworkError)
    assert str(InsufficientCredits()) == user_message(ErrorKind.INSUFFICIENT_CREDITS)
