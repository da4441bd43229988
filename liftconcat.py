#!/usr/bin/env python
"""
Lift BED or tab-delimited records of one line over to a new assembly.

    liftconcat.py -i calls.bed.gz -c dm6ToIso1.chain -l iso1 -o lifted.bed.gz -p 8 -n 500000

With -p > 1 and -n > 0 the input is split into chunks of -n records that are lifted
by -p workers at once and combined back in input order.
"""
import argparse
import os
import sys

import liftconcat_parallel
import liftconcat_transforms
import liftconcat_utilities
from liftconcat_errors import AggregateError, LiftconcatError, SourceReadError


def tabdel_columns(x):
    """Parse 'chrcol,bpcol[,bpcol2]' into (chrcol, [bpcols])."""
    tokens = x.split(",")
    if len(tokens) < 2 or len(tokens) > 3:
        raise argparse.ArgumentTypeError("%r: expected 2 or 3 comma-separated columns" % (x,))
    try:
        columns = [int(t) for t in tokens]
    except ValueError:
        raise argparse.ArgumentTypeError("%r: columns must be integers" % (x,))
    if min(columns) < 0:
        raise argparse.ArgumentTypeError("%r: columns must not be negative" % (x,))
    return columns[0], columns[1:]


def parse_arguments(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(description='Lift over genomic coordinates of one line, in parallel chunks',
                                     usage='%(prog)s [-h] [-v,--version]',
                                     formatter_class=argparse.ArgumentDefaultsHelpFormatter)

    parser.add_argument('-i', '--input', action='store', dest='inpath', required=True,
                        metavar='', help='Input .bed file (or tab-delimited file with -t); .gz is read transparently')

    parser.add_argument('-o', '--output', action='store', dest='outpath', default='stdout',
                        metavar='', help='Output file; "stdout" writes to standard output, a .gz name is compressed')

    parser.add_argument('-u', '--unmapped', action='store', dest='unmappedpath', default='unmapped.txt',
                        metavar='', help='Output file for records that could not be lifted')

    parser.add_argument('-c', '--chain', action='store', dest='chainpath', required=True,
                        metavar='', help='.chain file to use for liftover')

    parser.add_argument('-l', '--line_name', action='store', dest='line_name', required=True,
                        metavar='', help='Name of the line in the chromosome names of the input file to lift over')

    parser.add_argument('-t', '--tabdel', action='store', type=tabdel_columns, dest='tabdel', default=None,
                        metavar='',
                        help='''Comma-separated 0-based chromosome column, position column and optional end column.
                                Lifts a tab-delimited file (e.g., VCF) instead of BED.''')

    parser.add_argument('-T', '--tmpdir', action='store', dest='tmpdir', default='./',
                        metavar='', help='Directory in which to store temporary files')

    parser.add_argument('-p', '--processes', action='store', type=liftconcat_utilities.positive_int, default=1,
                        dest='processes', metavar='',
                        help='''Number of chunks to lift over simultaneously.
                                1 lifts the whole input in one go; requires --chunk_size to have an effect.''')

    parser.add_argument('-n', '--chunk_size', action='store', type=int, default=0, dest='chunk_size',
                        metavar='',
                        help='''Number of records per chunk. 0 disables chunking.
                                Each chunk is staged in --tmpdir, so large chunks need disk space rather than memory.''')

    parser.add_argument('-e', '--engine', type=str, choices=liftconcat_transforms.ENGINES, default='liftOver',
                        dest='engine', metavar='',
                        help='liftOver runs the UCSC executable; pyliftover converts in process')

    parser.add_argument('--liftover_command', action='store', dest='liftover_command', default='liftOver',
                        metavar='', help='Name or path of the liftOver executable')

    parser.add_argument('-z', '--compress_temps', action='store_true', dest='compress_temps',
                        help='Gzip the chunk staging files in --tmpdir')

    parser.add_argument('-v', '--version', action='version',
                        version=f'%(prog)s {liftconcat_utilities.__version__}')

    return parser.parse_args(argv)


def validate_arguments(args):
    """Validate command-line arguments."""
    if not os.path.exists(args.inpath):
        sys.stderr.write(f"input file {args.inpath} does not exist\n")
        sys.exit(1)

    if not os.path.exists(args.chainpath):
        sys.stderr.write(f".chain file {args.chainpath} does not exist\n")
        sys.exit(1)

    if not os.path.isdir(args.tmpdir):
        sys.stderr.write(f"temporary directory {args.tmpdir} does not exist\n")
        sys.exit(1)

    if args.chunk_size > 0 and args.processes < 2:
        liftconcat_utilities.print_warning("--chunk_size has no effect with a single process")


def print_cpu_guidance(args):
    """Warn when more workers are requested than the system can run."""
    cpu_count = liftconcat_utilities.available_cpus()
    if args.processes > 1 and args.chunk_size > 0:
        liftconcat_utilities.print_info(f"Using {args.processes} parallel workers on a {cpu_count}-core system")
        if args.processes > cpu_count * 1.5:
            liftconcat_utilities.print_warning(
                f"Processes ({args.processes}) exceeds system cores ({cpu_count}); consider reducing --processes")


def print_configuration(args):
    """Print configuration summary."""
    tabdel = "no"
    if args.tabdel:
        chrcol, bpcols = args.tabdel
        tabdel = ",".join(str(c) for c in [chrcol] + bpcols)
    lines = ['Input file                           : ' + args.inpath,
             'Output file                          : ' + args.outpath,
             'Unmapped file                        : ' + args.unmappedpath,
             'Chain file                           : ' + args.chainpath,
             'Line name                            : ' + args.line_name,
             'Tab-delimited columns                : ' + tabdel,
             'Temporary directory                  : ' + args.tmpdir,
             'Liftover engine                      : ' + args.engine,
             'Processes                            : ' + str(args.processes),
             'Chunk size                           : ' + str(args.chunk_size),
             'Compress temporary files?            : ' + str(args.compress_temps)]
    print("\n".join(lines) + "\n", file=sys.stderr)


def run_config(args):
    return liftconcat_parallel.RunConfig(workers=args.processes,
                                         chunk_size=args.chunk_size,
                                         staging_dir=args.tmpdir,
                                         compress_staging=args.compress_temps)


def liftover_full(args):
    """
    Open input and output, lift everything over and close them again.

    Returns:
        Number of chunks processed
    """
    transform = liftconcat_transforms.build_transform(args.chainpath, args.line_name,
                                                      tmpdir=args.tmpdir,
                                                      tabdel=args.tabdel,
                                                      engine=args.engine,
                                                      command=args.liftover_command)
    try:
        fh_in = liftconcat_utilities.open_optional_gz(args.inpath)
    except OSError as e:
        raise SourceReadError(f"cannot open {args.inpath}: {e}") from e

    with fh_in:
        if args.outpath == "stdout":
            return liftconcat_parallel.run_chunked(fh_in, sys.stdout, args.unmappedpath, transform,
                                                   run_config(args))
        with liftconcat_utilities.create_optional_gz(args.outpath) as fh_out:
            return liftconcat_parallel.run_chunked(fh_in, fh_out, args.unmappedpath, transform,
                                                   run_config(args))


def main(argv=None):
    """Main function to orchestrate the liftover workflow."""
    args = parse_arguments(argv)
    print_configuration(args)
    validate_arguments(args)
    print_cpu_guidance(args)

    liftconcat_utilities.print_w_time("START: Liftover")
    try:
        n_chunks = liftover_full(args)
    except AggregateError as e:
        liftconcat_utilities.print_error(f"Liftover finished with {len(e)} failure(s):")
        for error in e:
            print(f"  - {error}", file=sys.stderr)
        sys.exit(1)
    except (LiftconcatError, OSError) as e:
        liftconcat_utilities.print_error(str(e))
        sys.exit(1)
    liftconcat_utilities.print_w_time(f"END: Liftover ({n_chunks} chunks)")


if __name__ == "__main__":
    main()
