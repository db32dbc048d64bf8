"""
가맹점 분류 체계
가맹점명 패턴 → 업종, 업종 → 예상 계정과목 코드를 한 곳에서 관리한다.
자사 계정체계에 맞게 YAML로 교체할 수 있다.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml


# 기본 분류표 (업종: 가맹점명 패턴, 계정과목 코드)
DEFAULT_RULES = {
    # 교통비
    "TAXI": {
        "patterns": ["택시", "TAXI", "대리운전"],
        "account_codes": ["51110", "51111"],
    },
    # 접대비, 복리후생비
    "MEAL": {
        "patterns": ["식당", "레스토랑", "김밥", "분식", "치킨", "피자", "카페", "커피", "RESTAURANT", "CAFE"],
        "account_codes": ["51210", "51211"],
    },
    # 차량유지비
    "FUEL": {
        "patterns": ["주유소", "충전소", "GS칼텍스", "SK에너지", "현대오일뱅크", "S-OIL"],
        "account_codes": ["51310", "51311"],
    },
    # 출장비
    "HOTEL": {
        "patterns": ["호텔", "모텔", "펜션", "리조트", "HOTEL", "RESORT"],
        "account_codes": ["51410", "51411"],
    },
    # 사무용품비
    "OFFICE": {
        "patterns": ["문구", "사무용품", "오피스", "복사", "인쇄"],
        "account_codes": ["51510", "51511"],
    },
}


@dataclass(frozen=True)
class TaxonomyCategory:
    key: str
    patterns: tuple
    account_codes: tuple
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        alternation = "|".join(re.escape(p) for p in self.patterns)
        object.__setattr__(self, "_regex", re.compile(f"({alternation})", re.IGNORECASE))

    def matches(self, text: Optional[str]) -> bool:
        if not text or not self.patterns:
            return False
        return self._regex.search(text) is not None


class MerchantTaxonomy:
    """버전이 있는 가맹점 분류표. 등록 순서대로 먼저 맞는 업종을 채택한다."""

    def __init__(self, rules: Dict[str, Dict], version: str = "default"):
        self.version = version
        self._categories: List[TaxonomyCategory] = [
            TaxonomyCategory(
                key=key,
                patterns=tuple(rule.get("patterns") or ()),
                account_codes=tuple(str(c) for c in rule.get("account_codes") or ()),
            )
            for key, rule in rules.items()
        ]

    @property
    def categories(self) -> List[str]:
        return [c.key for c in self._categories]

    def classify(self, merchant_name: Optional[str], merchant_category: Optional[str] = None) -> Optional[str]:
        # 가맹점명 우선, 그 다음 업종명
        for text in (merchant_name, merchant_category):
            for category in self._categories:
                if category.matches(text):
                    return category.key
        return None

    def expected_accounts(self, key: Optional[str]) -> List[str]:
        for category in self._categories:
            if category.key == key:
                return list(category.account_codes)
        return []

    @classmethod
    def from_dict(cls, data: Dict) -> "MerchantTaxonomy":
        return cls(data.get("categories") or {}, version=str(data.get("version", "custom")))

    @classmethod
    def from_yaml(cls, path: str) -> "MerchantTaxonomy":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)


def default_taxonomy() -> MerchantTaxonomy:
    return MerchantTaxonomy(DEFAULT_RULES, version="default")
