from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class ScoreSource(str, enum.Enum):
    """Label-facts source systems"""
    DSLD = "dsld"
    LNHPD = "lnhpd"
    OCR = "ocr"
    MANUAL = "manual"


class AuditStatus(str, enum.Enum):
    """Review state of a form, alias or evidence row"""
    DERIVED = "derived"
    VERIFIED = "verified"


class Basis(str, enum.Enum):
    """Dose basis of a product ingredient amount"""
    LABEL_SERVING = "label_serving"
    RECOMMENDED_DAILY = "recommended_daily"
    ASSUMED_DAILY = "assumed_daily"
