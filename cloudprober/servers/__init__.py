"""HTTP and UDP servers that act as targets for probes."""