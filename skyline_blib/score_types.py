"""Score types recorded for library spectra.

The ``scoreType`` column of RefSpectra stores the ordinal of a
``ScoreType``. The ``ScoreTypes`` table stores the same ordinals with
their display names so a library stays readable without this enum.
"""

from __future__ import annotations

from enum import IntEnum


class ScoreType(IntEnum):
    """Search-engine score kinds, keyed by their persisted ordinal."""

    UNKNOWN = 0
    PERCOLATOR_QVALUE = 1
    PEPTIDE_PROPHET_SOMETHING = 2
    SPECTRUM_MILL = 3
    IDPICKER_FDR = 4
    MASCOT_IONS_SCORE = 5
    TANDEM_EXPECTATION_VALUE = 6
    PROTEIN_PILOT_CONFIDENCE = 7
    SCAFFOLD_SOMETHING = 8
    WATERS_MSE_PEPTIDE_SCORE = 9
    OMSSA_EXPECTATION_SCORE = 10
    PROTEIN_PROSPECTOR_EXPECTATION_SCORE = 11
    SEQUEST_XCORR = 12
    MAXQUANT_SCORE = 13
    MORPHEUS_SCORE = 14
    MSGF_SCORE = 15
    PEAKS_CONFIDENCE_SCORE = 16
    BYONIC_SCORE = 17
    PEPTIDE_SHAKER_CONFIDENCE = 18
    GENERIC_QVALUE = 19


# Names differing from the plain "underscores to spaces" form
_DISPLAY_NAME_OVERRIDES = {
    ScoreType.MSGF_SCORE: "MSGF+ SCORE",
    ScoreType.GENERIC_QVALUE: "GENERIC Q-VALUE",
}


def score_type_to_string(score_type: int) -> str:
    """Return the display name stored in the ScoreTypes table.

    Args:
        score_type: ScoreType member or its ordinal

    Returns:
        Display name, e.g. "PERCOLATOR QVALUE"

    Raises:
        ValueError: If the ordinal is not a known score type

    """
    member = ScoreType(score_type)
    if member in _DISPLAY_NAME_OVERRIDES:
        return _DISPLAY_NAME_OVERRIDES[member]
    return member.name.replace("_", " ")
