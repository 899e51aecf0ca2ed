"""
Предобработка страницы перед OCR: ориентация (Tesseract OSD) и наклон (deskew).

Включается настройкой preprocess_enabled. Любая ошибка предобработки
не роняет страницу — OCR получает исходное изображение.
"""

import logging

import numpy as np
import pytesseract
from deskew import determine_skew
from PIL import Image, ImageOps

from vnocr.config import settings

logger = logging.getLogger(__name__)


def detect_rotation(img: Image.Image) -> int:
    """
    Определяет угол поворота текста через Tesseract OSD.

    Перед OSD обрезаются края скана (osd_crop_percent с каждой стороны),
    картинка уменьшается до osd_resize_px и контрастируется.

    Returns:
        int: угол (0, 90, 180, 270); 0 если OSD не уверен или не справился
    """
    w, h = img.size
    crop = settings.osd_crop_percent
    work_img = img.crop((int(w * crop), int(h * crop), int(w * (1 - crop)), int(h * (1 - crop))))
    work_img.thumbnail((settings.osd_resize_px, settings.osd_resize_px))
    work_img = ImageOps.autocontrast(work_img.convert("L"))

    try:
        osd = pytesseract.image_to_osd(
            work_img,
            config="--psm 0",
            output_type=pytesseract.Output.DICT,
        )
    except (pytesseract.TesseractError, RuntimeError) as e:
        # Мало текста или только картинки
        logger.debug(f"OSD не определил ориентацию: {e}")
        return 0

    if float(osd.get("orientation_conf", 0.0)) < settings.osd_confidence_threshold:
        return 0
    return int(osd.get("rotate", 0))


def apply_rotation(img: Image.Image, rotation: int) -> Image.Image:
    """
    Поворачивает изображение в обратную сторону от угла OSD.

    OSD rotate=90 значит текст повёрнут на 90° по часовой,
    исправляем поворотом на 90° против (ROTATE_270 в терминах PIL).
    """
    if rotation == 90:
        return img.transpose(Image.Transpose.ROTATE_270)
    if rotation == 180:
        return img.transpose(Image.Transpose.ROTATE_180)
    if rotation == 270:
        return img.transpose(Image.Transpose.ROTATE_90)
    return img


def detect_skew(img: Image.Image) -> float:
    """
    Определяет мелкий наклон текста в градусах.

    Работает на уменьшенной до deskew_resize_px grayscale копии:
    на больших изображениях алгоритм медленный, на маленьких — неточный.
    """
    w, h = img.size
    ratio = settings.deskew_resize_px / max(w, h)
    small = img.resize((int(w * ratio), int(h * ratio)), Image.Resampling.BILINEAR)
    angle = determine_skew(np.array(small.convert("L")), num_peaks=settings.deskew_num_peaks)
    return float(angle) if angle is not None else 0.0


def apply_deskew(img: Image.Image, angle: float) -> Image.Image:
    if abs(angle) <= settings.skew_threshold:
        return img
    return img.rotate(
        -angle,
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor="white",
    )


def preprocess_page(img: Image.Image, page_number: int) -> Image.Image:
    """
    Исправляет ориентацию и наклон страницы.

    Args:
        img: изображение страницы
        page_number: номер страницы (для логов)

    Returns:
        Image.Image: исправленное изображение или исходное при ошибке
    """
    try:
        rotation = detect_rotation(img)
        rotated = apply_rotation(img, rotation)
        angle = detect_skew(rotated)
        corrected = apply_deskew(rotated, angle)
    except Exception as e:
        logger.warning(f"Предобработка страницы {page_number} пропущена: {e}")
        return img

    if rotation or abs(angle) > settings.skew_threshold:
        logger.info(f"Страница {page_number}: поворот {rotation}°, наклон {angle:.2f}°")
    return corrected
