from intake_api.text_utils import looks_misdecoded, normalize_text, repair_encoding, truncate_text


def _garble(text, codec):
    return text.encode("utf-8").decode(codec)


def test_repairs_cp1251_mojibake():
    garbled = _garble("Проблема с отоплением", "cp1251")
    assert looks_misdecoded(garbled)
    assert repair_encoding(garbled) == "Проблема с отоплением"


def test_repairs_cp1252_mojibake():
    garbled = _garble("Проблема", "cp1252")
    assert repair_encoding(garbled) == "Проблема"


def test_repairs_kazakh_letters():
    garbled = _garble("Өтініш қабылданды", "cp1251")
    assert repair_encoding(garbled) == "Өтініш қабылданды"


def test_genuine_cyrillic_is_untouched():
    for text in ("Проблема", "Рёв мотора", "Жалоба на дорогу", "Сұрау"):
        assert not looks_misdecoded(text)
        assert repair_encoding(text) == text


def test_uncovered_input_passes_through():
    assert repair_encoding("plain ascii text") == "plain ascii text"
    assert repair_encoding("") == ""


def test_normalize_collapses_whitespace_and_trims():
    assert normalize_text("  Проблема \t с   водой \n") == "Проблема с водой"
    assert normalize_text(None) == ""
    assert normalize_text(42) == ""


def test_normalize_repairs_then_collapses():
    garbled = _garble("Нет   света", "cp1251")
    assert normalize_text(f"  {garbled}  ") == "Нет света"


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    out = truncate_text("x" * 200, 150)
    assert len(out) == 150
    assert out.endswith("...")
