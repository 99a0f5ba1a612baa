"""
Tests for recovery code generation and storage.
"""
import pytest
from sqlalchemy import text

from stepguard.database.recovery_vault import RecoveryCodeVault, RecoverySchemaMissing, generate_codes


# ============================================
# Generation Tests
# ============================================

class TestGenerateCodes:

    def test_defaults(self):
        """Test nine distinct six-digit codes by default."""
        codes = generate_codes()
        assert len(codes) == 9
        assert len(set(codes)) == 9
        assert all(len(c) == 6 and c.isdigit() for c in codes)

    def test_bounds_are_clamped(self):
        assert len(generate_codes(count=0)) == 1
        assert len(generate_codes(count=50)) == 20
        assert all(len(c) == 4 for c in generate_codes(digits=1))
        assert all(len(c) == 12 for c in generate_codes(digits=30))


# ============================================
# Vault Tests
# ============================================

class TestRecoveryCodeVault:
    """Test storing and spending recovery codes."""

    def test_codes_are_hashed(self, vault, auth_db, user):
        codes = generate_codes()
        vault.replace_all(user.user_id, codes)

        with auth_db.get_session() as session:
            hashes = [r[0] for r in session.execute(text("SELECT code_hash FROM two_factor_recovery_codes")).fetchall()]
        assert len(hashes) == 9
        assert all(h.startswith("$2") for h in hashes)
        assert not set(codes) & set(hashes)

    def test_consume_valid_code_once(self, vault, user):
        codes = generate_codes()
        vault.replace_all(user.user_id, codes)

        assert vault.consume_if_valid(user.user_id, codes[3])
        assert vault.count_remaining(user.user_id) == 8
        assert not vault.consume_if_valid(user.user_id, codes[3])
        assert vault.count_remaining(user.user_id) == 8

    def test_code_with_separators(self, vault, user):
        vault.replace_all(user.user_id, ["123456"])
        assert vault.consume_if_valid(user.user_id, "123-456")

    def test_wrong_or_malformed_code(self, vault, user):
        vault.replace_all(user.user_id, ["123456"])
        assert not vault.consume_if_valid(user.user_id, "654321")
        assert not vault.consume_if_valid(user.user_id, "12")
        assert not vault.consume_if_valid(user.user_id, "")
        assert vault.count_remaining(user.user_id) == 1

    def test_codes_are_per_user(self, vault, user, other_user):
        vault.replace_all(user.user_id, ["123456"])
        assert not vault.consume_if_valid(other_user.user_id, "123456")
        assert vault.consume_if_valid(user.user_id, "123456")

    def test_replace_all_discards_previous_codes(self, vault, user):
        vault.replace_all(user.user_id, ["111111", "222222"])
        vault.replace_all(user.user_id, ["333333"])

        assert vault.count_remaining(user.user_id) == 1
        assert not vault.consume_if_valid(user.user_id, "111111")
        assert vault.consume_if_valid(user.user_id, "333333")

    def test_replace_all_deduplicates(self, vault, user):
        vault.replace_all(user.user_id, ["123456", "123 456", "654321"])
        assert vault.count_remaining(user.user_id) == 2

    def test_clear_all(self, vault, user):
        vault.replace_all(user.user_id, generate_codes())
        assert vault.clear_all(user.user_id) == 9
        assert vault.count_remaining(user.user_id) == 0
        assert vault.clear_all(user.user_id) == 0

    def test_malformed_hash_is_skipped(self, vault, auth_db, user):
        vault.replace_all(user.user_id, ["123456"])
        with auth_db.get_session() as session:
            session.execute(
                text("""
                    INSERT INTO two_factor_recovery_codes (user_id, code_hash, created_at)
                    VALUES (:user_id, 'not-a-bcrypt-hash', '2000-01-01T00:00:00+00:00')
                """),
                {"user_id": user.user_id}
            )
        assert vault.consume_if_valid(user.user_id, "123456")


# ============================================
# Missing Schema Tests
# ============================================

class TestMissingTable:
    """Test behavior on a database without the recovery table."""

    @pytest.fixture
    def bare_vault(self, auth_db):
        with auth_db.get_session() as session:
            session.execute(text("DROP TABLE two_factor_recovery_codes"))
        return RecoveryCodeVault(auth_db, bcrypt_rounds=4)

    def test_replace_all_raises(self, bare_vault):
        with pytest.raises(RecoverySchemaMissing):
            bare_vault.replace_all("user-1", ["123456"])

    def test_consume_raises(self, bare_vault):
        with pytest.raises(RecoverySchemaMissing):
            bare_vault.consume_if_valid("user-1", "123456")

    def test_count_and_clear_raise(self, bare_vault):
        with pytest.raises(RecoverySchemaMissing):
            bare_vault.count_remaining("user-1")
        with pytest.raises(RecoverySchemaMissing):
            bare_vault.clear_all("user-1")
