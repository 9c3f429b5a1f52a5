from app.services.common import digits_only
from app.services.exceptions import ValidationError


def _cpf_digit(digits: str, weight: int) -> str:
    total = sum(int(d) * (weight - i) for i, d in enumerate(digits))
    remainder = 11 - (total % 11)
    return "0" if remainder >= 10 else str(remainder)


def is_valid_cpf(value: str | None) -> bool:
    cpf = digits_only(value)
    if len(cpf) != 11 or cpf == cpf[0] * 11:
        return False
    first = _cpf_digit(cpf[:9], 10)
    second = _cpf_digit(cpf[:10], 11)
    return cpf[9:] == first + second


def _cnpj_digit(digits: str) -> str:
    weights = [*range(len(digits) - 7, 1, -1), *range(9, 1, -1)][: len(digits)]
    total = sum(int(d) * w for d, w in zip(digits, weights))
    remainder = total % 11
    return "0" if remainder < 2 else str(11 - remainder)


def is_valid_cnpj(value: str | None) -> bool:
    cnpj = digits_only(value)
    if len(cnpj) != 14 or cnpj == cnpj[0] * 14:
        return False
    first = _cnpj_digit(cnpj[:12])
    second = _cnpj_digit(cnpj[:13])
    return cnpj[12:] == first + second


def validate_document(value: str | None) -> str:
    """Return the CPF/CNPJ digits or raise if the check digits are wrong."""
    document = digits_only(value)
    valid = is_valid_cpf(document) if len(document) <= 11 else is_valid_cnpj(document)
    if not valid:
        raise ValidationError("Invalid CPF/CNPJ")
    return document


def validate_phone(value: str | None):
    """Mobile numbers carry the area code plus nine digits."""
    if value and len(digits_only(value)) != 11:
        raise ValidationError("Phone must have the area code and 9 digits")
