from .models import ExponentialInsulinModel, ExponentialInsulinModelPreset, InsulinType, PresetInsulinModelProvider
from .doses import DoseEntry, DoseType, InsulinDose, reconciled
