import unittest
from datetime import datetime

from app.contexts.fiscal.domain.access_key import (
    AccessKeyError,
    build_access_key,
    compute_check_digit,
    is_valid_access_key,
    parse_access_key,
    uf_from_access_key,
)


class AccessKeyTest(unittest.TestCase):
    def test_check_digit_validates_key(self) -> None:
        base = "3517100123456700016555001000000001100000001"
        self.assertEqual(len(base), 43)
        digit = compute_check_digit(base)
        self.assertTrue(0 <= digit <= 9)
        self.assertTrue(is_valid_access_key(base + str(digit)))
        self.assertFalse(is_valid_access_key(base + str((digit + 1) % 10)))

    def test_check_digit_zero_when_remainder_below_two(self) -> None:
        for candidate in range(200):
            base = f"{candidate:043d}"
            total = 0
            weight = 2
            for char in reversed(base):
                total += int(char) * weight
                weight = 2 if weight == 9 else weight + 1
            if total % 11 in (0, 1):
                self.assertEqual(compute_check_digit(base), 0)
                return
        self.fail("nenhuma base com resto 0 ou 1 encontrada")

    def test_build_and_parse_preserve_fields(self) -> None:
        key = build_access_key("SP", datetime(2026, 10, 19), "11.222.333/0001-81", "55", 1, 123, numeric_code="12345678")
        self.assertEqual(len(key), 44)

        parts = parse_access_key(key)
        self.assertEqual(parts.uf_code, "35")
        self.assertEqual(parts.uf, "SP")
        self.assertEqual(parts.year_month, "2610")
        self.assertEqual(parts.cnpj, "11222333000181")
        self.assertEqual(parts.model, "55")
        self.assertEqual(parts.series, 1)
        self.assertEqual(parts.number, 123)
        self.assertEqual(parts.emission_type, "1")
        self.assertEqual(parts.numeric_code, "12345678")
        self.assertEqual(parts.check_digit, int(key[-1]))

    def test_derived_numeric_code_is_stable_and_differs_from_number(self) -> None:
        emitted_at = datetime(2026, 10, 19, 10, 0)
        first = build_access_key("35", emitted_at, "11222333000181", "55", 1, 77)
        second = build_access_key("35", emitted_at, "11222333000181", "55", 1, 77)
        self.assertEqual(first, second)
        self.assertNotEqual(parse_access_key(first).numeric_code, f"{77:08d}")

    def test_rejects_invalid_keys(self) -> None:
        with self.assertRaises(AccessKeyError):
            parse_access_key("123")
        with self.assertRaises(AccessKeyError):
            parse_access_key("0" * 44)
        key = build_access_key("SP", datetime(2026, 10, 19), "11222333000181", "55", 1, 5)
        tampered = key[:43] + str((int(key[43]) + 1) % 10)
        with self.assertRaises(AccessKeyError):
            parse_access_key(tampered)

    def test_build_rejects_out_of_range_fields(self) -> None:
        emitted_at = datetime(2026, 10, 19)
        with self.assertRaises(AccessKeyError):
            build_access_key("SP", emitted_at, "123", "55", 1, 1)
        with self.assertRaises(AccessKeyError):
            build_access_key("SP", emitted_at, "11222333000181", "55", 1000, 1)
        with self.assertRaises(AccessKeyError):
            build_access_key("SP", emitted_at, "11222333000181", "55", 1, 0)
        with self.assertRaises(AccessKeyError):
            build_access_key("XX", emitted_at, "11222333000181", "55", 1, 1)

    def test_uf_from_access_key(self) -> None:
        key = build_access_key("RS", datetime(2026, 10, 19), "11222333000181", "55", 2, 9)
        self.assertEqual(uf_from_access_key(key), "RS")
        self.assertIsNone(uf_from_access_key("abc"))


if __name__ == "__main__":
    unittest.main()
