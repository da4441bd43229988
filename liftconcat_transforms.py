#!/usr/bin/env python
"""
Transforms that lift one file of records from one assembly to another.

Chromosome names in the input carry the name of the line they belong to
(e.g., 'chr2L_iso1'). Only records of the requested line are lifted: their names
are cleaned to the bare chromosome ('chr2L') for the chain file, lifted, and
suffixed again afterwards. Records of other lines pass through unchanged.

Two engines do the actual coordinate conversion:
    liftOver    - the UCSC executable, run as a subprocess (default)
    pyliftover  - the pyliftover library, in process

Every transform built here follows the same contract so that the chunked runner
can call it on any chunk:

    transform(input_path, output_sink, unmapped_path)
"""
import functools
import re
import subprocess
import threading

from pyliftover import LiftOver

import liftconcat_utilities
from liftconcat_errors import LiftOverError
from liftconcat_staging import staged

ENGINES = ("liftOver", "pyliftover")

_COMMENT_PATTERN = re.compile(r'^#')
_FIRST_COLUMN_PATTERN = re.compile(r'^[^\t]*')

# pyliftover chain indices are expensive to build, load each chain file once
_chain_cache = {}
_chain_lock = threading.Lock()


def _line_pattern(line_name):
    return re.compile(r'^([^\t_]*)_' + re.escape(line_name) + r'(?=\t|$)')


def _terminated(line):
    return line if line.endswith("\n") else line + "\n"


def clean_input(fh_in, fh_out, line_name):
    """
    Keep the records of one line and strip the line name from their chromosome.

    'chr2L_iso1<TAB>100<TAB>200' -> 'chr2L<TAB>100<TAB>200'

    Returns:
        int: Number of records written
    """
    pattern = _line_pattern(line_name)
    n_written = 0
    for line in fh_in:
        if pattern.match(line):
            fh_out.write(_terminated(pattern.sub(r'\1', line, count=1)))
            n_written += 1
    return n_written


def unclean_bed(fh_in, fh_clean, fh_out, line_name):
    """
    Write the records of fh_in that were not cleaned, then the lifted records of
    fh_clean with the line name appended back to their chromosome.
    """
    pattern = _line_pattern(line_name)
    for line in fh_in:
        if not pattern.match(line):
            fh_out.write(_terminated(line))

    suffix = "_" + line_name
    for line in fh_clean:
        line = line.rstrip("\n")
        chrom = _FIRST_COLUMN_PATTERN.match(line).group(0)
        fh_out.write(chrom + suffix + line[len(chrom):] + "\n")


def exec_liftover(fh_in, fh_out, unmapped_path, chain_path, command="liftOver"):
    """
    Run the liftOver executable with fh_in as stdin and fh_out as stdout.

    Both handles must be real files (subprocess needs their descriptors).
    Columns beyond the third are carried along unchanged (-bedPlus=3).
    """
    cmd = [liftconcat_utilities.get_liftover_command(command), "-bedPlus=3",
           "stdin", chain_path, "stdout", unmapped_path]
    try:
        result = subprocess.run(cmd, stdin=fh_in, stdout=fh_out, stderr=subprocess.PIPE,
                                universal_newlines=True, check=False)
    except OSError as e:
        raise LiftOverError(cmd, 127, str(e)) from e
    if result.returncode != 0:
        raise LiftOverError(cmd, result.returncode, result.stderr)


def load_chain(chain_path):
    with _chain_lock:
        lo = _chain_cache.get(chain_path)
        if lo is None:
            lo = LiftOver(chain_path)
            _chain_cache[chain_path] = lo
        return lo


def _convert_interval(lo, chrom, start, end):
    """
    Convert a 0-based half-open interval with pyliftover.

    Both ends must land on the same chromosome and strand.

    Returns:
        Tuple of (new_chrom, new_start, new_end) or None if the interval does not map
    """
    last = max(start, end - 1)
    start_converted = lo.convert_coordinate(chrom, start)
    if not start_converted:
        return None
    end_converted = lo.convert_coordinate(chrom, last)
    if not end_converted:
        return None

    new_chrom_start, new_start, new_strand_start, _ = start_converted[0]
    new_chrom_end, new_last, new_strand_end, _ = end_converted[0]
    if new_chrom_start != new_chrom_end or new_strand_start != new_strand_end:
        return None
    if end <= start:
        return new_chrom_start, new_start, new_start
    return new_chrom_start, min(new_start, new_last), max(new_start, new_last) + 1


def pyliftover_convert(fh_in, fh_out, unmapped_path, chain_path):
    """
    Lift BED records in process. Unmapped records go to unmapped_path the way
    liftOver writes them, each after a '#Deleted in new' line.
    """
    lo = load_chain(chain_path)
    with open(unmapped_path, "w") as fh_unmapped:
        for line in fh_in:
            if _COMMENT_PATTERN.match(line) or not line.strip():
                continue
            fields = line.rstrip("\n").split("\t")
            converted = _convert_interval(lo, fields[0], int(fields[1]), int(fields[2]))
            if converted is None:
                fh_unmapped.write("#Deleted in new\n" + _terminated(line))
                continue
            new_chrom, new_start, new_end = converted
            fields[0:3] = [new_chrom, str(new_start), str(new_end)]
            fh_out.write("\t".join(fields) + "\n")


def lift_records(fh_in, fh_out, unmapped_path, chain_path, engine="liftOver", command="liftOver"):
    if engine == "liftOver":
        exec_liftover(fh_in, fh_out, unmapped_path, chain_path, command=command)
    elif engine == "pyliftover":
        pyliftover_convert(fh_in, fh_out, unmapped_path, chain_path)
    else:
        raise ValueError(f"unknown liftover engine {engine!r}, expected one of {', '.join(ENGINES)}")


def lift_over(inpath, out, unmapped_path, chain_path, line_name, tmpdir="./",
              engine="liftOver", command="liftOver"):
    """
    Lift a BED file over: clean, convert, unclean.

    Args:
        inpath: BED file to lift (.gz read transparently)
        out: Open writable text stream receiving every record of inpath, lifted
             records of line_name last
        unmapped_path: File receiving the records that could not be lifted
        chain_path: Chain file from the source to the target assembly
        line_name: Line whose records are lifted
        tmpdir: Directory for the two intermediate files
        engine: 'liftOver' or 'pyliftover'
        command: liftOver executable when engine is 'liftOver'
    """
    with staged(tmpdir, "inclean_*.bed", "outclean_*.bed") as (inclean, outclean):
        with liftconcat_utilities.open_optional_gz(inpath) as fh_in, \
             open(inclean.path, "w") as fh_clean:
            clean_input(fh_in, fh_clean, line_name)

        with open(inclean.path) as fh_clean, open(outclean.path, "w") as fh_lifted:
            lift_records(fh_clean, fh_lifted, unmapped_path, chain_path, engine=engine, command=command)

        with liftconcat_utilities.open_optional_gz(inpath) as fh_in, \
             open(outclean.path) as fh_lifted:
            unclean_bed(fh_in, fh_lifted, out, line_name)


def _check_bpcols(bpcols):
    if len(bpcols) < 1 or len(bpcols) > 2:
        raise ValueError(f"expected 1 or 2 position columns, got {len(bpcols)}")


def extract_bed(fh_tab, fh_bed, chrcol, bpcols):
    """
    Write one BED interval per non-comment line of a tab-delimited file.

    The fourth BED column is the 0-based line number in fh_tab (comment lines
    included), used by return_bed to find the line again. Positions in the
    tab-delimited file are 1-based.
    """
    _check_bpcols(bpcols)
    for linenum, line in enumerate(fh_tab):
        if _COMMENT_PATTERN.match(line):
            continue
        fields = line.rstrip("\n").split("\t")
        bp0 = int(fields[bpcols[0]])
        end = fields[bpcols[1]] if len(bpcols) == 2 else str(bp0)
        fh_bed.write(f"{fields[chrcol]}\t{bp0 - 1}\t{end}\t{linenum}\n")


def bed_map(fh_bed):
    """Map line number -> [chrom, start, end] for the 4-column BED written by extract_bed."""
    changes = {}
    for line in fh_bed:
        fields = line.rstrip("\n").split("\t")
        if len(fields) != 4:
            raise ValueError(f"expected 4 BED columns, got {len(fields)}: {line.rstrip()}")
        changes[int(fields[3])] = fields[0:3]
    return changes


def return_bed(inpath, fh_bed, fh_tab, chrcol, bpcols):
    """
    Rewrite the tab-delimited file at inpath with the lifted coordinates of fh_bed.
    Comment lines and lines without a lifted interval are copied unchanged.
    """
    _check_bpcols(bpcols)
    changes = bed_map(fh_bed)
    with liftconcat_utilities.open_optional_gz(inpath) as fh_in:
        for linenum, line in enumerate(fh_in):
            line = line.rstrip("\n")
            lifted = changes.get(linenum)
            if _COMMENT_PATTERN.match(line) or lifted is None:
                fh_tab.write(line + "\n")
                continue
            fields = line.split("\t")
            fields[chrcol] = lifted[0]
            fields[bpcols[0]] = str(int(lifted[1]) + 1)
            if len(bpcols) == 2:
                fields[bpcols[1]] = lifted[2]
            fh_tab.write("\t".join(fields) + "\n")


def lift_tabdel(inpath, out, unmapped_path, chain_path, line_name, chrcol, bpcols, tmpdir="./",
                engine="liftOver", command="liftOver"):
    """
    Lift the chromosome and position columns of a tab-delimited file (e.g., a VCF).

    Args:
        chrcol: 0-based chromosome column
        bpcols: [position] or [start, end], 0-based columns holding 1-based positions
        (other arguments as for lift_over)
    """
    _check_bpcols(bpcols)
    with staged(tmpdir, "inbed_*.bed", "outbed_*.bed") as (inbed, outbed):
        with liftconcat_utilities.open_optional_gz(inpath) as fh_tab, \
             open(inbed.path, "w") as fh_bed:
            extract_bed(fh_tab, fh_bed, chrcol, bpcols)

        with open(outbed.path, "w") as fh_lifted:
            lift_over(inbed.path, fh_lifted, unmapped_path, chain_path, line_name, tmpdir,
                      engine=engine, command=command)

        with open(outbed.path) as fh_lifted:
            return_bed(inpath, fh_lifted, out, chrcol, bpcols)


def build_transform(chain_path, line_name, tmpdir="./", tabdel=None, engine="liftOver",
                    command="liftOver"):
    """
    Bind the liftover settings into a transform(input_path, output_sink, unmapped_path).

    Args:
        tabdel: None for BED input, or (chrcol, bpcols) for tab-delimited input
    """
    if engine not in ENGINES:
        raise ValueError(f"unknown liftover engine {engine!r}, expected one of {', '.join(ENGINES)}")
    if tabdel is not None:
        chrcol, bpcols = tabdel
        return functools.partial(lift_tabdel, chain_path=chain_path, line_name=line_name,
                                 chrcol=chrcol, bpcols=list(bpcols), tmpdir=tmpdir,
                                 engine=engine, command=command)
    return functools.partial(lift_over, chain_path=chain_path, line_name=line_name, tmpdir=tmpdir,
                             engine=engine, command=command)
