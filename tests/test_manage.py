from manage import MetagenAdmin
from metagen.token_ledger import token_ledger


def test_grant_tokens():
    admin = MetagenAdmin()

    assert admin.grant_tokens('alice', 25) is True
    assert token_ledger.get_balance('alice') == 25
    assert admin.grant_tokens('alice', 0) is False


def test_health_check_passes_with_sqlite():
    admin = MetagenAdmin()

    assert admin.check_database_connection() is True
    assert admin.check_redis_connection() is True
    assert admin.initialize_database() is True
