"""
Convert host-style modification annotations into OpenMS bracket notation.

The host reports a peptide as an unmodified sequence plus a list of tags::

    PEPTIDE   "N-Term(Acetyl); T4(Phospho)"

OpenMS tools expect the modification names inlined after the residue::

    (Acetyl)PEPT(Phospho)IDE
"""
from typing import Iterable, List, Tuple, Union

from .errors import InputContractViolation

AA_LETTERS = "ARNDCEQGHILKMFPSTWYV"

N_TERM = "N-Term"
C_TERM = "C-Term"
PROTEIN_TERM_QUALIFIER = "(Prot)"

Modifications = Union[str, Iterable[str], None]


def split_modifications(modifications: Modifications) -> List[str]:
    """Accept either the host's '; '-delimited string or a list of tags."""
    if modifications is None:
        return []
    if isinstance(modifications, str):
        items = modifications.split(";")
    else:
        items = list(modifications)
    return [m.strip() for m in items if m and m.strip()]


def _split_tag(tag: str) -> Tuple[str, str]:
    # "M11(Oxidation)" -> ("M11", "(Oxidation)"); nested parentheses stay in the name
    idx = tag.find("(")
    if idx <= 0 or not tag.endswith(")"):
        raise InputContractViolation(f"Malformed modification tag: {tag!r}")
    return tag[:idx], tag[idx:]


def _residue_position(site: str, tag: str, seq_len: int) -> int:
    try:
        pos = int(site[1:])
    except ValueError:
        raise InputContractViolation(f"Malformed modification tag: {tag!r}") from None
    if pos < 1 or pos > seq_len:
        raise InputContractViolation(
            f"Modification {tag!r} points outside of a sequence of length {seq_len}"
        )
    return pos


def _is_terminal(site: str) -> bool:
    return site.startswith(N_TERM) or site.startswith(C_TERM)


def _substitute_placeholders(sequence: str, tags: List[str]) -> Tuple[str, List[str]]:
    """
    Tags such as "X3(L)" do not describe a modification: they say that the
    ambiguous residue at position 3 is actually a leucine. Apply those to
    the sequence first, since the substituted residue may be modified too.
    """
    residues = list(sequence)
    remaining = []
    for tag in tags:
        site, name = _split_tag(tag)
        if not _is_terminal(site) and site[0] not in AA_LETTERS:
            inner = name[1:-1]
            if len(inner) == 1 and inner in AA_LETTERS:
                pos = _residue_position(site, tag, len(residues))
                residues[pos - 1] = inner
                continue
        remaining.append(tag)
    return "".join(residues), remaining


def translate(sequence: str, modifications: Modifications) -> str:
    """
    Return `sequence` with its modifications inlined as "(name)".

    Residue tags must be in ascending order of position; a decreasing
    position raises InputContractViolation instead of silently producing
    a scrambled sequence. Only the last N-/C-terminal tag is kept.
    """
    tags = split_modifications(modifications)
    if not tags:
        return sequence

    working, tags = _substitute_placeholders(sequence, tags)

    n_term_mod = ""
    c_term_mod = ""
    chunks = []
    last_pos = 0
    for raw in tags:
        tag = raw.replace(PROTEIN_TERM_QUALIFIER, "")
        site, name = _split_tag(tag)

        if site.startswith(N_TERM):
            n_term_mod = name
            continue
        if site.startswith(C_TERM):
            c_term_mod = name
            continue

        pos = _residue_position(site, raw, len(working))
        if pos < last_pos:
            raise InputContractViolation(
                f"Modifications of {sequence} are not in ascending residue order: {raw!r}"
            )
        chunks.append(working[last_pos:pos] + name)
        last_pos = pos

    return n_term_mod + "".join(chunks) + working[last_pos:] + c_term_mod


def _read_group(text: str, start: int) -> Tuple[str, int]:
    # text[start] == "("; return the balanced group and the index after it
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return text[start:i + 1], i + 1
    raise InputContractViolation(f"Unbalanced parentheses in {text!r}")


def decode(bracketed: str) -> Tuple[str, List[str]]:
    """
    Inverse of translate(): split a bracket-notation peptide back into the
    unmodified sequence and host-style tags.

    A name that follows the last residue is read as a modification of that
    residue, so translate(*decode(s)) == s for any output of translate().
    """
    residues: List[str] = []
    tags: List[str] = []
    i = 0
    while i < len(bracketed):
        ch = bracketed[i]
        if ch == "(":
            group, i = _read_group(bracketed, i)
            if residues:
                tags.append(f"{residues[-1]}{len(residues)}{group}")
            else:
                tags.append(f"{N_TERM}{group}")
        elif ch.isalpha():
            residues.append(ch)
            i += 1
        else:
            raise InputContractViolation(f"Unexpected character {ch!r} in {bracketed!r}")
    return "".join(residues), tags

