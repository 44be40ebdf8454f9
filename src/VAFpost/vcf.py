import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union

import numpy as np
from cyvcf2 import VCF, Writer

from .utils import Locus, PosteriorResult

logger = logging.getLogger(__name__)

AF_FORMAT_KEY = "AF"


def info_key(event: str) -> str:
    """INFO field name of an event, e.g. 'somatic_tumor' -> 'PROB_SOMATIC_TUMOR'."""
    return f"PROB_{event.upper()}"


def _is_symbolic(alt: str) -> bool:
    return alt.startswith("<") or "[" in alt or "]" in alt or alt in ("*", ".")


def read_candidates(path: Union[str, Path]) -> Iterator[Locus]:
    """
    Candidate loci of a VCF/BCF file, one per alternative allele, in file order.

    Symbolic, breakend and malformed alleles cannot be evaluated and are
    skipped; the two kinds are counted separately.
    """
    n_symbolic = 0
    n_malformed = 0
    for variant in VCF(str(path)):
        for alt in variant.ALT:
            try:
                locus = Locus(
                    contig=variant.CHROM,
                    pos=int(variant.POS),
                    ref=variant.REF,
                    alt=alt,
                    id=variant.ID,
                )
            except ValueError as e:
                if _is_symbolic(alt):
                    n_symbolic += 1
                    logger.debug("Skipping symbolic allele %s at %s:%s", alt, variant.CHROM, variant.POS)
                else:
                    n_malformed += 1
                    logger.debug("Skipping %s:%s: %s", variant.CHROM, variant.POS, e)
                continue
            yield locus
    if n_symbolic:
        logger.warning("Skipped %d symbolic or breakend alternative alleles", n_symbolic)
    if n_malformed:
        logger.warning("Skipped %d alleles with invalid bases", n_malformed)


class CallWriter:
    """
    Annotates the candidate VCF with posterior event probabilities.

    Every event becomes a Phred-scaled INFO field ``PROB_<EVENT>`` (one value
    per alternative allele) and the VAF estimates go into the ``AF`` FORMAT
    field of the samples present in the template.

    Parameters
    ----------
    template : str or Path
        The candidate VCF the results were computed for; used as header template.
    output : str or Path
        Output VCF/BCF path.
    event_names : Sequence[str]
        Events reported by the caller.
    """

    def __init__(
        self,
        template: Union[str, Path],
        output: Union[str, Path],
        event_names: Sequence[str],
    ):
        self.vcf = VCF(str(template))
        self.event_names = list(event_names)
        for event in self.event_names:
            self.vcf.add_info_to_header(
                {
                    "ID": info_key(event),
                    "Description": f"Posterior probability for event {event} (PHRED)",
                    "Type": "Float",
                    "Number": "A",
                }
            )
        self.vcf.add_format_to_header(
            {
                "ID": AF_FORMAT_KEY,
                "Description": "Posterior allele frequency estimate",
                "Type": "Float",
                "Number": "A",
            }
        )
        self.writer = Writer(str(output), self.vcf)
        self.samples: List[str] = list(self.vcf.samples)

    def _annotate(self, variant, by_alt: Dict[str, PosteriorResult]):
        alts = list(variant.ALT)
        for event in self.event_names:
            values = [
                by_alt[alt].phred(event) if alt in by_alt else float("nan") for alt in alts
            ]
            # One float per allele; alleles without a result are NaN.
            variant.INFO[info_key(event)] = [round(value, 3) for value in values]

        if self.samples:
            af = np.full((len(self.samples), len(alts)), np.nan, dtype=np.float32)
            for j, alt in enumerate(alts):
                if alt not in by_alt:
                    continue
                estimates = by_alt[alt].vaf_estimates
                for i, sample in enumerate(self.samples):
                    if sample in estimates:
                        af[i, j] = estimates[sample]
            variant.set_format(AF_FORMAT_KEY, af)

    def write(self, results: Iterable[PosteriorResult]) -> int:
        """
        Write every template record, annotated with the matching results.

        Results must come in candidate order (as produced by the caller).

        Returns
        -------
        int
            Number of annotated records.
        """
        results = iter(results)
        pending: Optional[PosteriorResult] = next(results, None)
        n_annotated = 0
        for variant in self.vcf:
            by_alt: Dict[str, PosteriorResult] = {}
            while (
                pending is not None
                and pending.locus.contig == variant.CHROM
                and pending.locus.pos == int(variant.POS)
                and pending.locus.ref == variant.REF
                and pending.locus.alt in variant.ALT
                and pending.locus.alt not in by_alt
            ):
                by_alt[pending.locus.alt] = pending
                pending = next(results, None)
            if by_alt:
                self._annotate(variant, by_alt)
                n_annotated += 1
            self.writer.write_record(variant)
        if pending is not None:
            logger.warning("Result for %s has no matching record in the template", pending.locus.name)
        return n_annotated

    def close(self):
        self.writer.close()
        self.vcf.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
