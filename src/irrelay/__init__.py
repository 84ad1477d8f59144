# SPDX-FileCopyrightText: 2021 Rose Davidson <rose@metaclassical.com>
#
# SPDX-License-Identifier: GPL-3.0-or-later

# Relay pipeline
# input socket (lircd) -> SourceReader -> Classifier -> Broadcaster -> per-client queues -> output socket
#
# The Classifier turns lircd repeat counters into NEW and HOLD presses.
# A ShutdownCoordinator stops the reader, classifier and broadcaster on SIGINT/SIGHUP/SIGTERM/SIGQUIT.
