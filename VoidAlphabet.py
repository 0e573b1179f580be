"""
Glyph code tables for the Void modular typeface.

Each code lists 5 rows of cells, row-major, two characters per cell:
a module tag (E S C J L R B) followed by a quarter-turn rotation digit.
"""

ROWS = 5
GLYPH_COLS = 5
SPACE_COLS = 3
REPEATED_SPACE_COLS = 2

SPACE = 'E0' * (SPACE_COLS * ROWS)

ALPHABET = {
    'A': 'E0R1S1R2E0R1B3E0B0R2S0E0E0E0S2L1S1S1S1L2S0E0E0E0S2',
    'B': 'L1S1S1S1R2L0S3S3S3R3S0E0E0B0R2S0E0E0E0S2L0S3S3S3R3',
    'C': 'E0R1S1R2E0R1B3E0B0R2S0E0E0E0E0R0B2E0B1R3E0R0S3R3E0',
    'D': 'L1S1S1R2E0S0E0E0B0R2S0E0E0E0S2S0E0E0B1R3L0S3S3R3E0',
    'E': 'L1S1S1S1S1S0E0E0E0E0L1S1S1S1E0S0E0E0E0E0L0S3S3S3S3',
    'F': 'L1S1S1S1S1S0E0E0E0E0L1S1S1S1E0S0E0E0E0E0S0E0E0E0E0',
    'G': 'E0R1S1S1R2R1B3E0E0E0S0E0S1S1R2R0B2E0E0S2E0R0S3S3R3',
    'H': 'S0E0E0E0S2S0E0E0E0S2L1S1S1S1L2S0E0E0E0S2S0E0E0E0S2',
    'I': 'S1S1J1S1S1E0E0C0E0E0E0E0C0E0E0E0E0C0E0E0S3S3J3S3S3',
    'J': 'S1S1S1S1L2E0E0E0E0S2S0E0E0E0S2R0B2E0B1R3E0R0S3R3E0',
    'K': 'S0E0E0E0S2S0E0B1S3R3J0C1J2E0E0S0E0B0S1R2S0E0E0E0S2',
    'L': 'S0E0E0E0E0S0E0E0E0E0S0E0E0E0E0S0E0E0E0E0L0S3S3S3S3',
    'M': 'S0R1R2R1R2L1B3S2E0S2S0E0S2E0S2S0E0S2E0S2S0E0S2E0S2',
    'N': 'S0R1S1S1R2L1B3E0E0S2S0E0E0E0S2S0E0E0E0S2S0E0E0E0S2',
    'O': 'E0R1S1R2E0R1B3E0B0R2S0E0E0E0S2R0B2E0B1R3E0R0S3R3E0',
    'P': 'L1S1S1S1R2L0B2E0E0S2S0R0S3S3R3S0E0E0E0E0S0E0E0E0E0',
    'Q': 'E0R1S1R2E0R1B3E0B0R2S0E0E0E0S2R0B2E0E0R2E0R0S3R3S2',
    'R': 'L1S1S1S1R2S0E0E0E0S2L0S3S3S3R3S0E0E0B0R2S0E0E0E0S2',
    'S': 'E0R1S1R2E0R1B3E0B0R2R0S3S1S1R2R0B2E0B1R3E0R0S3R3E0',
    'T': 'S1S1J1S1S1E0E0C0E0E0E0E0C0E0E0E0E0C0E0E0E0E0C0E0E0',
    'U': 'S0E0E0E0S2S0E0E0E0S2S0E0E0E0S2S0E0E0E0S2R0S3S3S3R3',
    'V': 'S0E0E0E0S2S0E0E0E0S2S0E0E0E0S2R0B2E0B1R3E0R0S3R3E0',
    'W': 'S0E0C0E0S2S0E0C0E0S2S0B1J3B2S2S0S2E0S0S2R0R3E0R0R3',
    'X': 'S1R2E0R1S1E0S2E0S0E0E0B0J1B3E0E0S2E0S0E0S3R3E0R0S3',
    'Y': 'S1R2E0R1S1E0S2E0S0E0E0B0J1B3E0E0E0C0E0E0E0E0C0E0E0',
    'Z': 'S1S1S1S1R2E0E0E0E0R3R1S1S1S1E0S0E0E0E0E0R0S3S3S3S3',
    '0': 'E0R1S1R2E0R1B3E0B0R2S0E0C1E0S2R0B2E0B1R3E0R0S3R3E0',
    '1': 'E0S1L2E0E0E0E0S2E0E0E0E0S2E0E0E0E0S2E0E0S3S3L3S3S3',
    '2': 'R1S1S1S1R2E0E0E0E0S2E0S3S3S3R3R1E0E0E0E0R0S3S3S3S3',
    '3': 'S1S1S1S1R2E0E0E0E0R3E0S1S1S1R2E0E0E0E0S2S3S3S3S3R3',
    '4': 'S0E0E0E0S2S0E0E0E0S2R0S3S3S3L3E0E0E0E0S2E0E0E0E0S2',
    '5': 'L1S1S1S1S1R0E0E0E0E0E0S1S1S1R2E0E0E0E0S2R0S3S3S3R3',
    '6': 'R1S1S1S1S1S0E0E0E0E0S0R1S1S1R2L1B3E0E0S2R0S3S3S3R3',
    '7': 'S1S1S1S1R2E0E0E0E0R3E0E0R1S1E0E0E0S0E0E0E0E0S0E0E0',
    '8': 'R1S1S1S1R2R0E0E0E0R3R1S1S1S1R2S0E0E0E0S2R0S3S3S3R3',
    '9': 'R1S1S1S1R2S0E0E0B1L3R0S3S3R3S2E0E0E0E0S2S3S3S3S3R3',
    '(': 'R1S1S1E0E0S0E0E0E0E0S0E0E0E0E0S0E0E0E0E0R0S3S3E0E0',
    ')': 'E0E0S1S1R2E0E0E0E0S2E0E0E0E0S2E0E0E0E0S2E0E0S3S3R3',
    '{': 'E0R1S1E0E0R1B3E0E0E0S0E0E0E0E0R0B2E0E0E0E0R0S3E0E0',
    '}': 'E0E0S1R2E0E0E0E0B0R2E0E0E0E0S2E0E0E0B1R3E0E0S3R3E0',
    '-': ('E0E0E0E0E0'
          'E0E0E0E0E0'
          'E0S1S1S1E0'
          'E0E0E0E0E0'
          'E0E0E0E0E0'),
    '.': ('E0E0E0E0E0'
          'E0E0E0E0E0'
          'E0E0E0E0E0'
          'E0E0E0E0E0'
          'E0E0C0E0E0'),
    ' ': SPACE,
}

ALTERNATES = {
    'A': [('L1S1S1S1L2'
           'S0E0E0E0S2'
           'J0S1S1S1J2'
           'S0E0E0E0S2'
           'S0E0E0E0S2')],
    'M': [('L1S1J1S1L2'
           'S0E0C0E0S2'
           'S0E0C0E0S2'
           'S0E0C0E0S2'
           'S0E0C0E0S2')],
    'W': [('S0E0C0E0S2'
           'S0E0C0E0S2'
           'S0E0C0E0S2'
           'S0E0C0E0S2'
           'L0S3J3S3L3')],
    '0': [ALPHABET['O']],
    '1': [('E0S1L2E0E0'
           'E0E0S2E0E0'
           'E0E0S2E0E0'
           'E0E0S2E0E0'
           'E0E0S2E0E0')],
}
