"""
Очистка вьетнамского OCR текста.

Рассчитано на вывод Tesseract vie+eng (LSTM, 300 DPI) по деловым
и юридическим документам. Этапы:
    1. Определение типа документа по сигнатурам
    2. Защита кодов/номеров от правок (плейсхолдеры)
    3. Удаление механических артефактов скана
    4. Нормализация пробелов
    5. Восстановление диакритики в частых словах и терминах
    6. Форматирование чисел и дат
    7. Форматирование структуры (статьи договора)
    8. Возврат защищённых токенов и финальная чистка

Очистка best-effort: любое исключение оборачивается в CleaningError,
пайплайн в этом случае отдаёт сырой текст.
"""

import logging
import re
from dataclasses import dataclass

from vnocr.errors import CleaningError
from vnocr.schemas import CleaningMetadata

logger = logging.getLogger(__name__)

_I = re.IGNORECASE


def _rx(pattern: str, flags: int = _I) -> re.Pattern:
    return re.compile(pattern, flags)


# Тип документа определяется, если совпало хотя бы 2 сигнатуры
DOCUMENT_TYPE_SIGNATURES: dict[str, list[re.Pattern]] = {
    "contract_lease": [
        _rx(r"HỢP ĐỒNG CHO THUÊ"),
        _rx(r"BÊN CHO THUÊ.*BÊN THUÊ", _I | re.DOTALL),
        _rx(r"thời hạn thuê"),
        _rx(r"tiền đặt cọc"),
    ],
    "contract_employment": [
        _rx(r"HỢP ĐỒNG LAO ĐỘNG"),
        _rx(r"người lao động"),
        _rx(r"người sử dụng lao động"),
        _rx(r"thời gian thử việc"),
        _rx(r"mức lương"),
    ],
    "contract_service": [
        _rx(r"HỢP ĐỒNG DỊCH VỤ"),
        _rx(r"BÊN CUNG CẤP DỊCH VỤ"),
        _rx(r"BÊN SỬ DỤNG DỊCH VỤ"),
        _rx(r"phạm vi dịch vụ"),
    ],
    "contract_sale": [
        _rx(r"HỢP ĐỒNG MUA BÁN"),
        _rx(r"BÊN BÁN.*BÊN MUA", _I | re.DOTALL),
        _rx(r"hàng hóa"),
        _rx(r"bảo hành"),
    ],
    "invoice": [
        _rx(r"HÓA ĐƠN"),
        _rx(r"VAT"),
        _rx(r"Mã số thuế"),
        _rx(r"Đơn giá.*Thành tiền", _I | re.DOTALL),
        _rx(r"Tổng tiền"),
    ],
    "receipt": [
        _rx(r"BIÊN LAI"),
        _rx(r"PHIẾU THU"),
        _rx(r"đã nhận của"),
        _rx(r"tổng số tiền"),
    ],
    "payment_request": [
        _rx(r"PHIẾU ĐỀ NGHỊ THANH TOÁN"),
        _rx(r"đề nghị thanh toán"),
        _rx(r"người đề nghị"),
        _rx(r"bộ phận đề nghị"),
    ],
    "purchase_order": [
        _rx(r"ĐƠN ĐẶT HÀNG"),
        _rx(r"ĐƠN HÀNG"),
        _rx(r"số lượng.*đơn giá", _I | re.DOTALL),
        _rx(r"ngày giao hàng"),
    ],
    "delivery_note": [
        _rx(r"PHIẾU GIAO HÀNG"),
        _rx(r"PHIẾU XUẤT KHO"),
        _rx(r"người giao hàng"),
        _rx(r"người nhận hàng"),
    ],
    "meeting_minutes": [
        _rx(r"BIÊN BẢN HỌP"),
        _rx(r"BIÊN BẢN CUỘC HỌP"),
        _rx(r"thành phần tham dự"),
        _rx(r"nội dung cuộc họp"),
        _rx(r"kết luận"),
    ],
    "memo": [
        _rx(r"CÔNG VĂN"),
        _rx(r"THÔNG BÁO"),
        _rx(r"Kính gửi"),
        _rx(r"V/v:"),
        _rx(r"Trân trọng"),
    ],
    "report": [
        _rx(r"BÁO CÁO"),
        _rx(r"kết quả.*đạt được", _I | re.DOTALL),
        _rx(r"tình hình.*thực hiện", _I | re.DOTALL),
        _rx(r"đề xuất.*kiến nghị", _I | re.DOTALL),
    ],
    "certificate": [
        _rx(r"GIẤY CHỨNG NHẬN"),
        _rx(r"CHỨNG NHẬN"),
        _rx(r"cấp cho"),
        _rx(r"có giá trị"),
    ],
    "power_of_attorney": [
        _rx(r"GIẤY ỦY QUYỀN"),
        _rx(r"ỦY QUYỀN"),
        _rx(r"người ủy quyền"),
        _rx(r"người được ủy quyền"),
        _rx(r"phạm vi ủy quyền"),
    ],
    "proposal": [
        _rx(r"ĐỀ XUẤT"),
        _rx(r"TỜ TRÌNH"),
        _rx(r"lý do đề xuất"),
        _rx(r"phương án"),
        _rx(r"kinh phí"),
    ],
}

# Коды, телефоны, длинные номера — не трогаем при очистке
PRESERVE_PATTERNS = [
    re.compile(r"\b\d{2,3}_[A-Z]{2,10}\b"),
    re.compile(r"\b[A-Z]_[A-Z]{2}_[A-Z]\d{2}_\d{2}\b"),
    re.compile(r"\b\d{2}\.\d{2}\.\d{2}\.\d{2}\b"),
    re.compile(r"\b\d{6,}/[A-Z0-9-]+\b", _I),
    re.compile(r"\b[A-Z]{2,}\d+\b"),
    re.compile(r"\b\d{10,13}\b"),
    re.compile(r"\b0\d{9,10}\b"),
]

# (шаблон, замена); пустая замена — артефакт удаляется целиком
MECHANICAL_ARTIFACTS = [
    (re.compile(r"^¬\d+\s*", re.MULTILINE), ""),
    (re.compile(r"\sir\s*_¬\s*ee\s*-\s*"), " "),
    (re.compile(r"[ \t]+_+[ \t]+"), " "),
    (re.compile(r"[„“”]"), '"'),
    (re.compile(r"[⁄／]"), "/"),
    (re.compile(r"^[ \t]*[:.][ \t]*", re.MULTILINE), ""),
    (re.compile(r"\.{4,}"), "..."),
    (re.compile(r",{2,}"), ","),
    (re.compile("\u00ad"), ""),
    (re.compile("[\u200b-\u200d\ufeff]"), ""),
    (re.compile("\u00a0"), " "),
    (re.compile(r"[ \t]+[¬_⁄¦│]{1,2}[ \t]+"), " "),
]

VIETNAMESE_CHAR_FIXES = [
    (_rx(r"\bDia\s+chi\b"), "Địa chỉ"),
    (_rx(r"\bDien\s+thoai\b"), "Điện thoại"),
    (re.compile(r"\bdai\s+dien\b"), "đại diện"),
    (re.compile(r"\bDai\s+dien\b"), "Đại diện"),
    (_rx(r"\bDon\s+gia\b"), "Đơn giá"),
    (_rx(r"\bđon\s+vi\b"), "đơn vị"),
    (_rx(r"\bđang\s+ky\b"), "đăng ký"),
    (_rx(r"\bđieu\b"), "điều"),
    (re.compile(r"\bDIEU\b"), "ĐIỀU"),
    (_rx(r"\bđên\b"), "đến"),
    (re.compile(r"\bHOP\s+DONG\b"), "HỢP ĐỒNG"),
    (_rx(r"\bHop\s+dong\b"), "Hợp đồng"),
    (_rx(r"\btoa\s+nha\b"), "toà nhà"),
    (_rx(r"\bbo\s+phan\b"), "bộ phận"),
    (_rx(r"\btru\s+so\b"), "trụ sở"),
    (_rx(r"\bdu\s+an\b"), "dự án"),
    (_rx(r"\bthu\s+tuc\b"), "thủ tục"),
    (re.compile(r"\bBAT\s+DONG\s+SAN\b"), "BẤT ĐỘNG SẢN"),
    (_rx(r"\bBat\s+dong\s+san\b"), "Bất động sản"),
    (_rx(r"\bnang\s+cap\b"), "nâng cấp"),
    (_rx(r"\bthang\s+may\b"), "thang máy"),
    (re.compile(r"\bCAN\s+CU\b"), "CĂN CỨ"),
    (_rx(r"\bCan\s+cu\b"), "Căn cứ"),
    (_rx(r"\bcam\s+doan\b"), "cam đoan"),
    (_rx(r"\bthao\s+thuan\b"), "thoả thuận"),
    (re.compile(r"\bBen\s+A\b"), "Bên A"),
    (re.compile(r"\bBen\s+B\b"), "Bên B"),
    (re.compile(r"\bBEN\b"), "BÊN"),
    (_rx(r"\bthiet\s+hai\b"), "thiệt hại"),
    (_rx(r"\bkiem\s+tra\b"), "kiểm tra"),
    (_rx(r"\bhieu\s+luc\b"), "hiệu lực"),
    (_rx(r"\bNgay\s+cap\b"), "Ngày cấp"),
    (_rx(r"\bSo\s*:"), "Số:"),
    (_rx(r"\bNgay\s*:"), "Ngày:"),
    (re.compile(r"\bQuan\s+(\d+)\b"), r"Quận \1"),
    (re.compile(r"\bPhuong\s+(\d+)\b"), r"Phường \1"),
    (_rx(r"\bTP\.\s*HCM\b"), "TP.HCM"),
    (_rx(r"\bTPHCM\b"), "TP.HCM"),
]

CORE_VOCABULARY = [
    (_rx(r"\bCong\s+ty\b"), "Công ty"),
    (_rx(r"\bCo\s+phan\b"), "Cổ phần"),
    (_rx(r"\bTong\s+giam\s+doc\b"), "Tổng giám đốc"),
    (_rx(r"\bGiam\s+doc\b"), "Giám đốc"),
    (_rx(r"\bHoi\s+dong\b"), "Hội đồng"),
    (_rx(r"\bquan\s+tri\b"), "quản trị"),
    (_rx(r"\bGiay\s+chung\s+nhan\b"), "Giấy chứng nhận"),
    (_rx(r"\bMa\s+so\s+thue\b"), "Mã số thuế"),
    (_rx(r"\bnghia\s+vu\b"), "nghĩa vụ"),
    (_rx(r"\bquyen\s+loi\b"), "quyền lợi"),
    (_rx(r"\btranh\s+chap\b"), "tranh chấp"),
    (_rx(r"\bboi\s+thuong\b"), "bồi thường"),
    (_rx(r"\bphat\s+sinh\b"), "phát sinh"),
    (_rx(r"\bthuc\s+hien\b"), "thực hiện"),
    (_rx(r"\bthanh\s+toan\b"), "thanh toán"),
    (_rx(r"\bdat\s+coc\b"), "đặt cọc"),
    (_rx(r"\bTong\s+cong\b"), "Tổng cộng"),
    (_rx(r"\bBang\s+chu\b"), "Bằng chữ"),
    (_rx(r"\bchi\s+phi\b"), "chi phí"),
    (_rx(r"\bThoi\s+han\b"), "Thời hạn"),
    (_rx(r"\bthoi\s+gian\b"), "thời gian"),
    (_rx(r"\bban\s+giao\b"), "bàn giao"),
    (_rx(r"\bgia\s+han\b"), "gia hạn"),
    (_rx(r"\bsu\s+dung\b"), "sử dụng"),
    (_rx(r"\bquan\s+ly\b"), "quản lý"),
    (_rx(r"\bbao\s+ve\b"), "bảo vệ"),
    (_rx(r"\bve\s+sinh\b"), "vệ sinh"),
    (_rx(r"\ban\s+ninh\b"), "an ninh"),
    (_rx(r"\btrat\s+tu\b"), "trật tự"),
    (_rx(r"\btrieu\b"), "triệu"),
    (_rx(r"\bnghin\b"), "nghìn"),
    (_rx(r"\btram\b"), "trăm"),
    (_rx(r"\bmuoi\b"), "mươi"),
]

LEGAL_VOCABULARY: dict[str, list[tuple[re.Pattern, str]]] = {
    "general_legal": [
        (_rx(r"\bBo\s+luat\s+Dan\s+su\b"), "Bộ luật Dân sự"),
        (_rx(r"\bBo\s+luat\s+Lao\s+dong\b"), "Bộ luật Lao động"),
        (_rx(r"\bLuat\s+Doanh\s+nghiep\b"), "Luật Doanh nghiệp"),
        (_rx(r"\bLuat\s+Thuong\s+mai\b"), "Luật Thương mại"),
        (_rx(r"\bNghi\s+dinh\b"), "Nghị định"),
        (_rx(r"\bThong\s+tu\b"), "Thông tư"),
        (_rx(r"\bQuyet\s+dinh\b"), "Quyết định"),
    ],
    "contract_terms": [
        (_rx(r"\btrach\s+nhiem\b"), "trách nhiệm"),
        (_rx(r"\bvi\s+pham\b"), "vi phạm"),
        (_rx(r"\btoan\s+bo\b"), "toàn bộ"),
        (_rx(r"\bđon\s+phuong\b"), "đơn phương"),
        (_rx(r"\bcham\s+dut\b"), "chấm dứt"),
        (_rx(r"\bhuy\s+bo\b"), "hủy bỏ"),
        (_rx(r"\btrong\s+truong\s+hop\b"), "trong trường hợp"),
        (_rx(r"\bkhong\s+duoc\b"), "không được"),
        (_rx(r"\bduoc\s+quyen\b"), "được quyền"),
    ],
    "corporate_terms": [
        (_rx(r"\bBan\s+giam\s+doc\b"), "Ban giám đốc"),
        (_rx(r"\bPho\s+giam\s+doc\b"), "Phó giám đốc"),
        (_rx(r"\bKe\s+toan\s+truong\b"), "Kế toán trưởng"),
        (_rx(r"\bNguoi\s+dai\s+dien\s+phap\s+luat\b"), "Người đại diện pháp luật"),
        (_rx(r"\bVon\s+dieu\s+le\b"), "Vốn điều lệ"),
    ],
    "financial_terms": [
        (_rx(r"\btam\s+ung\b"), "tạm ứng"),
        (_rx(r"\bhoan\s+tra\b"), "hoàn trả"),
        (_rx(r"\bkhau\s+tru\b"), "khấu trừ"),
        (_rx(r"\bquyet\s+toan\b"), "quyết toán"),
        (_rx(r"\blai\s+suat\b"), "lãi suất"),
        (_rx(r"\bthue\s+GTGT\b"), "thuế GTGT"),
        (_rx(r"\bhoa\s+don\b"), "hóa đơn"),
        (_rx(r"\bchung\s+tu\b"), "chứng từ"),
        (_rx(r"\bphieu\s+chi\b"), "phiếu chi"),
        (_rx(r"\bphieu\s+thu\b"), "phiếu thu"),
        (_rx(r"\bbien\s+lai\b"), "biên lai"),
    ],
    "real_estate_terms": [
        (_rx(r"\bcho\s+thue\b"), "cho thuê"),
        (_rx(r"\bmua\s+ban\b"), "mua bán"),
        (_rx(r"\bchuyen\s+nhuong\b"), "chuyển nhượng"),
        (_rx(r"\bvan\s+phong\b"), "văn phòng"),
        (_rx(r"\bmat\s+bang\b"), "mặt bằng"),
        (_rx(r"\bdien\s+tich\b"), "diện tích"),
        (_rx(r"\bquyen\s+su\s+dung\s+dat\b"), "quyền sử dụng đất"),
        (_rx(r"\bphi\s+quan\s+ly\b"), "phí quản lý"),
    ],
    "employment_terms": [
        (_rx(r"\bhop\s+dong\s+lao\s+dong\b"), "hợp đồng lao động"),
        (_rx(r"\bnguoi\s+lao\s+dong\b"), "người lao động"),
        (_rx(r"\bnhan\s+vien\b"), "nhân viên"),
        (_rx(r"\bmuc\s+luong\b"), "mức lương"),
        (_rx(r"\bphu\s+cap\b"), "phụ cấp"),
        (_rx(r"\bnghi\s+phep\b"), "nghỉ phép"),
        (_rx(r"\bthu\s+viec\b"), "thử việc"),
        (_rx(r"\bbao\s+hiem\s+xa\s+hoi\b"), "bảo hiểm xã hội"),
        (_rx(r"\bbao\s+hiem\s+y\s+te\b"), "bảo hiểm y tế"),
    ],
    "administrative_terms": [
        (_rx(r"\bthu\s+tuc\s+hanh\s+chinh\b"), "thủ tục hành chính"),
        (_rx(r"\bgiay\s+to\b"), "giấy tờ"),
        (_rx(r"\bho\s+so\b"), "hồ sơ"),
        (_rx(r"\bcan\s+cuoc\s+cong\s+dan\b"), "căn cước công dân"),
        (_rx(r"\bcong\s+chung\b"), "công chứng"),
    ],
    "government_terms": [
        (_rx(r"\bNha\s+nuoc\b"), "Nhà nước"),
        (_rx(r"\bChinh\s+phu\b"), "Chính phủ"),
        (_rx(r"\bUy\s+ban\s+nhan\s+dan\b"), "Ủy ban nhân dân"),
        (_rx(r"\bToa\s+an\b"), "Toà án"),
        (_rx(r"\bCong\s+an\b"), "Công an"),
    ],
}

ARTICLE_PATTERN = _rx(r"\b(?:DIEU|Dieu|Điều)\s*(\d+)\b")

_KNOWN_TYPES = {"contract_lease", "contract_employment", "invoice", "payment_request"}


@dataclass
class CleaningResult:
    """Очищенный текст и отчёт о правках."""

    cleaned: str
    metadata: CleaningMetadata


class VietnameseOCRCleaner:
    """
    Очистка вьетнамского OCR текста.

    Attributes:
        preserve_codes: защищать коды и номера от правок
        fix_structure: форматировать структуру по типу документа
        detect_document_type: определять тип документа
    """

    def __init__(
        self,
        preserve_codes: bool = True,
        fix_structure: bool = True,
        detect_document_type: bool = True,
    ):
        self.preserve_codes = preserve_codes
        self.fix_structure = fix_structure
        self.detect_document_type = detect_document_type

    def clean(self, text: str) -> CleaningResult:
        """
        Очищает текст.

        Raises:
            CleaningError: при любой внутренней ошибке очистки
        """
        if not text or not isinstance(text, str):
            return CleaningResult(cleaned="", metadata=CleaningMetadata())

        try:
            return self._clean(text)
        except Exception as e:
            raise CleaningError(f"Очистка текста не удалась: {e}") from e

    def _clean(self, text: str) -> CleaningResult:
        changes: list[dict] = []

        doc_type = self._detect_document_type(text) if self.detect_document_type else "unknown"

        cleaned, tokens = self._preserve_tokens(text) if self.preserve_codes else (text, {})
        cleaned = self._remove_mechanical_artifacts(cleaned, changes)
        cleaned = self._normalize_whitespace(cleaned, changes)
        cleaned = _apply_replacements(cleaned, VIETNAMESE_CHAR_FIXES, "vietnamese_char_fix", changes)
        cleaned = _apply_replacements(cleaned, CORE_VOCABULARY, "core_vocabulary_fix", changes)
        for category, replacements in LEGAL_VOCABULARY.items():
            cleaned = _apply_replacements(
                cleaned, replacements, "legal_vocabulary", changes, category=category
            )
        cleaned = self._fix_numbers_and_dates(cleaned, changes)
        if self.fix_structure:
            cleaned = self._apply_document_formatting(cleaned, doc_type, changes)
        cleaned = _restore_tokens(cleaned, tokens)
        cleaned = _final_cleanup(cleaned)

        original_length = len(text)
        metadata = CleaningMetadata(
            document_type=doc_type,
            changes_count=sum(c.get("count", 1) for c in changes),
            confidence=_calculate_confidence(text, cleaned, changes, doc_type),
            original_length=original_length,
            cleaned_length=len(cleaned),
            reduction=round((original_length - len(cleaned)) / original_length * 100, 1),
            changes=changes,
        )
        return CleaningResult(cleaned=cleaned, metadata=metadata)

    def _detect_document_type(self, text: str) -> str:
        best_type, best_score = "unknown", 0
        for doc_type, patterns in DOCUMENT_TYPE_SIGNATURES.items():
            score = sum(1 for pattern in patterns if pattern.search(text))
            if score > best_score:
                best_type, best_score = doc_type, score
        return best_type if best_score >= 2 else "unknown"

    def _preserve_tokens(self, text: str) -> tuple[str, dict[str, str]]:
        tokens: dict[str, str] = {}

        def stash(match: re.Match) -> str:
            placeholder = f"__TOKEN{len(tokens)}__"
            tokens[placeholder] = match.group(0)
            return placeholder

        for pattern in PRESERVE_PATTERNS:
            text = pattern.sub(stash, text)
        return text, tokens

    def _remove_mechanical_artifacts(self, text: str, changes: list[dict]) -> str:
        for pattern, replacement in MECHANICAL_ARTIFACTS:
            text, count = pattern.subn(replacement, text)
            if count:
                changes.append({"type": "mechanical_artifact_removal", "count": count})
        return text

    def _normalize_whitespace(self, text: str, changes: list[dict]) -> str:
        result = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
        result = re.sub(r" {2,}", " ", result)
        result = re.sub(r"\n{4,}", "\n\n\n", result)
        result = re.sub(r"^ +| +$", "", result, flags=re.MULTILINE)
        if result != text:
            changes.append({"type": "whitespace_normalization"})
        return result.strip()

    def _fix_numbers_and_dates(self, text: str, changes: list[dict]) -> str:
        # Денежные суммы: 5000000 -> 5.000.000 (годы и короткие числа не трогаем)
        result, count = re.subn(
            r"(?<![\d.,/])\b\d{5,9}\b(?![.,/]\d)",
            lambda m: f"{int(m.group(0)):,}".replace(",", "."),
            text,
        )
        if count:
            changes.append({"type": "number_formatting", "count": count})

        result, count = re.subn(
            r"\b(\d{1,2})\s*[/\\.-]\s*(\d{1,2})\s*[/\\.-]\s*(\d{4})\b", r"\1/\2/\3", result
        )
        # Даты, уже записанные как d/m/yyyy, не считаем правкой
        if count and result != text:
            changes.append({"type": "date_formatting", "count": count})

        return result

    def _apply_document_formatting(self, text: str, doc_type: str, changes: list[dict]) -> str:
        if not doc_type.startswith("contract"):
            return text
        result, count = ARTICLE_PATTERN.subn(lambda m: f"ĐIỀU {m.group(1)}", text)
        if result != text:
            changes.append({"type": "article_formatting", "count": count})
        return result


def _apply_replacements(
    text: str,
    replacements: list[tuple[re.Pattern, str]],
    change_type: str,
    changes: list[dict],
    category: str = "",
) -> str:
    total = 0
    for pattern, replacement in replacements:
        text, count = pattern.subn(replacement, text)
        total += count
    if total:
        change = {"type": change_type, "count": total}
        if category:
            change["category"] = category
        changes.append(change)
    return text


def _restore_tokens(text: str, tokens: dict[str, str]) -> str:
    for placeholder, value in tokens.items():
        text = text.replace(placeholder, value, 1)
    return text


def _final_cleanup(text: str) -> str:
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"\n{4,}", "\n\n\n", text)
    text = re.sub(r"^[ \t]+|[ \t]+$", "", text, flags=re.MULTILINE)
    return text.strip()


def _calculate_confidence(
    original: str,
    cleaned: str,
    changes: list[dict],
    doc_type: str,
) -> float:
    """
    Уверенность очистки (0-1).

    Веса: изменение длины 0.30, тип документа 0.35,
    количество правок 0.20, попадания по юридической лексике 0.15.
    """
    change_ratio = abs(len(original) - len(cleaned)) / len(original)
    change_score = max(0.0, 1 - change_ratio * 2)

    if doc_type in _KNOWN_TYPES:
        type_score = 1.0
    elif doc_type != "unknown":
        type_score = 0.8
    else:
        type_score = 0.5

    change_type_score = max(0.0, 1 - len(changes) * 0.02)
    legal_hits = sum(1 for c in changes if c["type"] == "legal_vocabulary")
    vocab_score = min(1.0, 0.7 + legal_hits * 0.03)

    confidence = (
        change_score * 0.30
        + type_score * 0.35
        + change_type_score * 0.20
        + vocab_score * 0.15
    )
    return round(confidence, 2)
