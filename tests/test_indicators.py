from scamguard.indicators import HeuristicIndicatorExtractor, extract_urls

KYC_SMS = (
    "Dear SBI customer, your KYC is expired and your account will be blocked today. "
    "Update KYC immediately at http://sbi-kyc-update.in/verify!!"
)


def test_kyc_message_indicators():
    indicators = HeuristicIndicatorExtractor().extract(KYC_SMS)
    assert indicators.urgency
    assert indicators.credential_request
    assert indicators.impersonation
    assert not indicators.financial_request
    assert -1.0 <= indicators.sentiment_score < 0


def test_payment_request_is_detected():
    indicators = HeuristicIndicatorExtractor().extract("You won a lottery! Pay processing fee of Rs 499 via UPI")
    assert indicators.financial_request


def test_hindi_cues():
    indicators = HeuristicIndicatorExtractor().extract("अपना ओटीपी तुरंत भेजें")
    assert indicators.urgency
    assert indicators.credential_request


def test_neutral_text_has_no_indicators():
    indicators = HeuristicIndicatorExtractor().extract("See you at the temple on Sunday evening")
    assert indicators == type(indicators)()


def test_url_paths_do_not_trigger_keywords():
    indicators = HeuristicIndicatorExtractor().extract("Photos: https://example.in/otp-password-kyc")
    assert not indicators.credential_request


def test_extract_urls_strips_punctuation_and_duplicates():
    text = "Click http://bit.ly/abc, or www.sbi-kyc.in. Again: http://bit.ly/abc!"
    assert extract_urls(text) == ["http://bit.ly/abc", "www.sbi-kyc.in"]
    assert extract_urls("") == []
