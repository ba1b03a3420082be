import sys

from mta_antispam.app import main

main(sys.argv[1:])
